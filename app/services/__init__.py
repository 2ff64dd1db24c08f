from app.services.inbound_pipeline import InboundOutcome, process_inbound
from app.services.result import Result
from app.services.subscription_service import (
    ensure_current_subscription,
    has_chat_quota,
    increment_chat_usage,
    provision_default_workspace_for_user,
    sync_assistant_access,
)
