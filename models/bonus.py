# models/bonus.py
"""
Bonus model - ledger transaction record for every matrix commission.
"""
from sqlalchemy import Column, Integer, String, Float, DECIMAL, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class Bonus(Base, AuditMixin):
    __tablename__ = 'bonuses'
    __table_args__ = (
        UniqueConstraint('referenceID', 'commissionType', name='uq_bonus_reference_kind'),
    )

    # Primary key
    bonusID = Column(Integer, primary_key=True, autoincrement=True)

    # Relations
    userID = Column(Integer, ForeignKey('users.userID'), nullable=False)  # Beneficiary
    downlineID = Column(Integer, ForeignKey('users.userID'), nullable=True)  # Whose placement paid it
    positionID = Column(Integer, nullable=True, index=True)

    # Idempotency key: "position=12;user=3" + commissionType
    referenceID = Column(String, nullable=False)
    commissionType = Column(String, nullable=False)  # referral, cycle, matching

    # Denormalized data for reports
    level = Column(Integer, nullable=True)
    uplineLevel = Column(Integer, nullable=True)  # Cascade depth (1 = direct sponsor)

    # Bonus calculation
    bonusRate = Column(Float, nullable=False)  # Percent (10.0 for 10%)
    bonusAmount = Column(DECIMAL(12, 2), nullable=False)
    reserveAmount = Column(DECIMAL(12, 2), default=0)

    # Status
    status = Column(String, default="paid")  # paid, cancelled
    notes = Column(Text, nullable=True)

    # Relationships
    user = relationship('User', foreign_keys=[userID], backref='bonuses_received')
    downline = relationship('User', foreign_keys=[downlineID], backref='bonuses_generated')

    def __repr__(self):
        return f"<Bonus(bonusID={self.bonusID}, user={self.userID}, type={self.commissionType}, amount={self.bonusAmount})>"
