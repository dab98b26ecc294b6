"""
文件上传与处理服务
"""

__version__ = "0.1.0"
