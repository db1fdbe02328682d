# models/notification.py
"""
Notification model - outbox of user and admin messages, delivered asynchronously.
"""
from sqlalchemy import Column, Integer, String, Text, DateTime
from datetime import datetime, timezone
from models.base import Base


class Notification(Base):
    __tablename__ = 'notifications'

    notificationID = Column(Integer, primary_key=True, autoincrement=True)
    createdAt = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    source = Column(String, nullable=False)
    text = Column(Text, nullable=False)

    targetType = Column(String, nullable=False)  # user, admin
    targetValue = Column(String, nullable=False)

    priority = Column(Integer, default=5)
    category = Column(String, nullable=True)  # matrix, review
    importance = Column(String, default='normal')

    status = Column(String, default='pending')
    sentAt = Column(DateTime, nullable=True)
    failureReason = Column(Text, nullable=True)

    def __repr__(self):
        return f"<Notification(id={self.notificationID}, target={self.targetType}:{self.targetValue}, category={self.category})>"
