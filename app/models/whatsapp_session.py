from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP

from app.database import Base


class WhatsAppSession(Base):
    __tablename__ = "whatsapp_sessions"

    tenant_id = Column(Text, primary_key=True)
    status = Column(Text, nullable=False, default="disconnected")
    qr_data = Column(Text)
    phone_number = Column(Text)
    last_connected_at = Column(TIMESTAMP(timezone=True))
    last_seen_at = Column(TIMESTAMP(timezone=True))
    last_error = Column(Text)
    auth_state = Column(JSONB)
