from turnloop.infrastructure.adapters.secondary.messaging.logging_approval_workflow import (
    LoggingApprovalWorkflow,
)
from turnloop.infrastructure.adapters.secondary.messaging.redis_turn_notifier import (
    RedisTurnNotifier,
)
from turnloop.infrastructure.adapters.secondary.messaging.redis_work_queue import (
    QueuedJob,
    RedisWorkQueue,
)

__all__ = ["LoggingApprovalWorkflow", "QueuedJob", "RedisTurnNotifier", "RedisWorkQueue"]
