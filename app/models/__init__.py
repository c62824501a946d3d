from app.models.message_template import MessageTemplate
from app.models.tenant import Tenant
from app.models.whatsapp_session import WhatsAppSession

__all__ = [
    "MessageTemplate",
    "Tenant",
    "WhatsAppSession",
]
