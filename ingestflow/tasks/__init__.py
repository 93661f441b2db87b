"""
Background Tasks
Celery app, stage queues and task wrappers.
"""
