from turnloop.domain.model.action.action_result import ActionContext, ActionErrorCode, ActionResult

__all__ = ["ActionContext", "ActionErrorCode", "ActionResult"]
