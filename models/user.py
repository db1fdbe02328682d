# models/user.py
"""
User model - member directory used for sponsor chains and balances.
"""
from sqlalchemy import Column, Integer, BigInteger, String, DECIMAL, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from models.base import Base


class User(Base):
    __tablename__ = 'users'

    # Primary identification
    userID = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, unique=True, nullable=False, index=True)
    telegramID = Column(BigInteger, unique=True, nullable=True)
    sponsorID = Column(Integer, ForeignKey('users.userID'), nullable=True, index=True)
    createdAt = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    # Personal information
    email = Column(String, nullable=True)
    firstname = Column(String, nullable=True)
    surname = Column(String, nullable=True)

    # System fields
    status = Column(String, default="active")  # active, pending, blocked

    # Balances
    balancePassive = Column(DECIMAL(12, 2), default=0)
    reserveBalance = Column(DECIMAL(12, 2), default=0)
    totalEarnings = Column(DECIMAL(12, 2), default=0)

    sponsor = relationship('User', remote_side=[userID], backref='referrals')

    def __repr__(self):
        return f"<User(userID={self.userID}, username={self.username}, sponsor={self.sponsorID})>"
