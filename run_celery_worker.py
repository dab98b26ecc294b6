#!/usr/bin/env python3
"""
Celery Worker启动脚本

用于启动处理缩略图、PDF和分片清理任务的worker进程
"""

from fileflow.core.logging import setup_logging

if __name__ == "__main__":
    setup_logging()

    # 导入任务模块，确保任务注册到Celery应用
    import fileflow.tasks.jobs  # noqa: F401
    from fileflow.tasks.celery import celery_app

    print("=== Celery Worker启动 ===")
    print("\n已注册的任务:")
    for task_name in sorted(celery_app.tasks.keys()):
        if not task_name.startswith("celery."):
            print(f"  - {task_name}")

    print(f"\nBroker: {celery_app.conf.broker_url}")
    print(f"Backend: {celery_app.conf.result_backend}")
    print("\n启动Worker...")

    celery_app.worker_main(
        [
            "worker",
            "--loglevel=info",
            "--queues=default,file_tasks,scheduled",
            "--beat",  # 同一进程内运行定时任务，便于本地调试
            "--concurrency=2",
        ]
    )
