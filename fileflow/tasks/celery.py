from celery import Celery
from celery.schedules import crontab
from kombu import Exchange, Queue

from fileflow.core.config import settings

default_exchange = Exchange("default", type="direct")

# 定义队列
task_queues = (
    Queue("default", default_exchange, routing_key="default"),  # 默认队列
    Queue("file_tasks", default_exchange, routing_key="file"),  # 文件处理队列
    Queue("scheduled", default_exchange, routing_key="scheduled"),  # 定时任务队列
)

# 创建Celery应用
celery_app = Celery(
    "fileflow",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["fileflow.tasks.jobs.file"],
)

celery_app.conf.update(
    # 队列配置
    task_queues=task_queues,
    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",
    task_routes={
        "tasks.file.cleanup_expired_chunks": {"queue": "scheduled"},
        "tasks.file.*": {"queue": "file_tasks"},
    },
    # 任务执行设置
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_time_limit=600,  # 10分钟
    task_soft_time_limit=540,
    worker_max_tasks_per_child=200,
    result_expires=60 * 60 * 24,  # 一天
    # 任务跟踪和监控
    task_track_started=True,
    task_send_sent_event=True,
    worker_send_task_events=True,
    # 至少投递一次：任务执行完成后才确认，worker 异常退出时重新投递
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# 定义定时任务
celery_app.conf.beat_schedule = {
    # 每小时清理超时未完成的分片上传
    "hourly-cleanup-expired-chunks": {
        "task": "tasks.file.cleanup_expired_chunks",
        "schedule": crontab(minute=15),
        "options": {"queue": "scheduled"},
    },
}
