from sqlalchemy import Boolean, Column, String, DateTime, Integer, ForeignKey, Text
from datetime import datetime
from .database import Base


class CreditAccount(Base):
    __tablename__ = "credit_accounts"

    session_id = Column(String, primary_key=True, index=True)
    user_id = Column(String, nullable=True)
    is_user_account = Column(Boolean, default=False, nullable=False)
    credits = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_updated = Column(DateTime, default=datetime.utcnow)


class ChatSession(Base):
    __tablename__ = "chat_sessions"

    session_id = Column(String, primary_key=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_active = Column(DateTime, default=datetime.utcnow)


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    session_id = Column(String, ForeignKey("chat_sessions.session_id"), index=True, nullable=False)
    role = Column(String, nullable=False)  # user / model
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String(16), unique=True, index=True, nullable=False)
    credits = Column(Integer, nullable=False)
    plan_title = Column(String, nullable=False)
    is_used = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    used_by = Column(String, nullable=True)
    used_at = Column(DateTime, nullable=True)
