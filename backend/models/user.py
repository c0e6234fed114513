from datetime import datetime
from sqlalchemy import String, DateTime, Text, Integer
from sqlalchemy.orm import Mapped, mapped_column
from database import Base


class User(Base):
    """POS staff member. The cashier key doubles as the shared secret for login."""
    __tablename__ = "USER_TBL"

    casher_key: Mapped[str] = mapped_column("CASHER_KEY", String(50), primary_key=True)
    user_name: Mapped[str | None] = mapped_column("USER_NAME", String(255), nullable=True)


class ActivityLog(Base):
    """Audit trail of privileged actions taken from a display."""
    __tablename__ = "USER_ACTIVITY_LOGS"

    id: Mapped[int] = mapped_column("ID", Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column("USER_ID", String(50))
    user_name: Mapped[str | None] = mapped_column("USER_NAME", String(255), nullable=True)
    action: Mapped[str] = mapped_column("ACTION", String(100))
    details: Mapped[str | None] = mapped_column("DETAILS", Text, nullable=True)  # JSON encoded
    component: Mapped[str | None] = mapped_column("COMPONENT", String(100), nullable=True)
    timestamp: Mapped[datetime] = mapped_column("TIMESTAMP", DateTime, default=datetime.utcnow)
