from app.models.assistant import Assistant
from app.models.assistant_channel import AssistantChannel
from app.models.assistant_product import AssistantProduct
from app.models.assistant_service import AssistantService
from app.models.calendar_event import CompanyCalendarEvent
from app.models.chat import Chat
from app.models.chat_message import ChatMessage
from app.models.client_order import CompanyClientOrder
from app.models.client_question import CompanyClientQuestion
from app.models.client_task import CompanyClientTask
from app.models.company import Company
from app.models.company_client import CompanyClient
from app.models.company_subscription import CompanySubscription
from app.models.invoice import Invoice
from app.models.subscription_plan import SubscriptionPlan
from app.models.user import User

__all__ = [
    "User",
    "Company",
    "SubscriptionPlan",
    "CompanySubscription",
    "Invoice",
    "Assistant",
    "AssistantService",
    "AssistantProduct",
    "AssistantChannel",
    "Chat",
    "ChatMessage",
    "CompanyClient",
    "CompanyClientOrder",
    "CompanyCalendarEvent",
    "CompanyClientTask",
    "CompanyClientQuestion",
]
