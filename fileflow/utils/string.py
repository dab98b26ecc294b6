import re
from pathlib import PurePosixPath


def safe_filename(filename: str, default: str = "file") -> str:
    """
    生成可安全用作存储路径片段的文件名

    去掉目录部分，仅保留字母、数字、点、下划线和连字符。
    例如: "../My Pattern (v2).pdf" -> "My-Pattern-v2-.pdf"
    """
    name = PurePosixPath(filename.replace("\\", "/")).name
    name = re.sub(r"[^A-Za-z0-9._-]+", "-", name)
    # 不允许以点开头（隐藏文件或 ".."）
    name = name.lstrip(".")
    return name or default
