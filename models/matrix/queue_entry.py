# models/matrix/queue_entry.py
"""
QueueEntry model - pending placement request ("verifier" record).
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from models.base import Base


class QueueEntry(Base):
    __tablename__ = 'queue_entries'

    entryID = Column(Integer, primary_key=True, autoincrement=True)

    # Requester
    userID = Column(Integer, ForeignKey('users.userID'), nullable=True, index=True)
    username = Column(String, nullable=False)
    level = Column(Integer, nullable=False)

    enqueuedAt = Column(DateTime, default=lambda: datetime.now(timezone.utc), index=True)
    entryType = Column(String, default="new")  # new, reentry, cross, manual
    sponsorHint = Column(String, nullable=True)  # Sponsor username

    # Processing state
    processed = Column(Boolean, default=False, nullable=False, index=True)
    processedAt = Column(DateTime, nullable=True)
    status = Column(String, default="pending")  # pending, done, failed
    failureReason = Column(Text, nullable=True)
    positionID = Column(Integer, ForeignKey('matrix_positions.positionID'), nullable=True)
    attempts = Column(Integer, default=0)

    user = relationship('User', backref='queue_entries')

    def toDict(self) -> dict:
        return {
            "id": self.entryID,
            "userId": self.userID,
            "username": self.username,
            "level": self.level,
            "enqueuedAt": self.enqueuedAt.isoformat() if self.enqueuedAt else None,
            "entryType": self.entryType,
            "sponsor": self.sponsorHint,
            "processed": self.processed,
            "processedAt": self.processedAt.isoformat() if self.processedAt else None,
            "status": self.status,
            "failureReason": self.failureReason,
            "positionId": self.positionID,
        }

    def __repr__(self):
        return (f"<QueueEntry(id={self.entryID}, user={self.username}, level={self.level}, "
                f"processed={self.processed})>")
