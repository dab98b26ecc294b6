"""
Celery异步任务模块
"""

from fileflow.tasks.jobs.file import (cleanup_expired_chunks_task,
                                      cleanup_temp_files_task,
                                      extract_pdf_metadata_task,
                                      generate_pdf_thumbnail_task,
                                      generate_thumbnails_task)

__all__ = [
    "generate_thumbnails_task",
    "extract_pdf_metadata_task",
    "generate_pdf_thumbnail_task",
    "cleanup_temp_files_task",
    "cleanup_expired_chunks_task",
]
