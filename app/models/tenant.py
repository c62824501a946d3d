from sqlalchemy import Boolean, Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP

from app.database import Base


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Text, primary_key=True)
    name = Column(Text)
    business_category = Column(Text)
    description = Column(Text)
    wa_connected = Column(Boolean, nullable=False, default=False)
    wa_phone = Column(Text)
    wa_last_connected_at = Column(TIMESTAMP(timezone=True))
    last_error = Column(Text)
