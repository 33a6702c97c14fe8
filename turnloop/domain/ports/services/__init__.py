from turnloop.domain.ports.services.action_executor_port import ActionExecutorPort
from turnloop.domain.ports.services.approval_workflow_port import ApprovalWorkflowPort
from turnloop.domain.ports.services.dispatcher_port import DispatcherPort
from turnloop.domain.ports.services.llm_adapter_port import LLMAdapterPort
from turnloop.domain.ports.services.record_context_port import RecordContextProviderPort
from turnloop.domain.ports.services.turn_notification_port import TurnNotificationPort

__all__ = [
    "ActionExecutorPort",
    "ApprovalWorkflowPort",
    "DispatcherPort",
    "LLMAdapterPort",
    "RecordContextProviderPort",
    "TurnNotificationPort",
]
