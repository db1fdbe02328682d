# models/matrix/position.py
"""
MatrixPosition model - one slot in a forced matrix. Never deleted.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from models.base import Base


class MatrixPosition(Base):
    __tablename__ = 'matrix_positions'
    __table_args__ = (
        UniqueConstraint('parentPositionID', 'slotIndex', name='uq_position_parent_slot'),
    )

    positionID = Column(Integer, primary_key=True, autoincrement=True)
    createdAt = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    # Owner
    userID = Column(Integer, ForeignKey('users.userID'), nullable=False, index=True)
    username = Column(String, nullable=False)
    sponsorID = Column(Integer, ForeignKey('users.userID'), nullable=True)

    # Tree
    level = Column(Integer, ForeignKey('matrix_level_config.level'), nullable=False, index=True)
    parentPositionID = Column(Integer, ForeignKey('matrix_positions.positionID'), nullable=True, index=True)
    slotIndex = Column(Integer, nullable=True)  # 0..width-1, null for roots
    treeDepth = Column(Integer, default=0, nullable=False)
    positionPath = Column(JSON, nullable=False, default=list)  # Ancestor ids, root first

    # Lifecycle
    status = Column(String, default="active", index=True)  # pending, active, completed
    totalEarned = Column(DECIMAL(12, 2), default=0)
    cycleCount = Column(Integer, default=0)
    cycledAt = Column(DateTime, nullable=True)

    # Relationships
    user = relationship('User', foreign_keys=[userID], backref='matrix_positions')
    parent = relationship('MatrixPosition', remote_side=[positionID], backref='children')

    @property
    def isRoot(self) -> bool:
        return self.parentPositionID is None

    def __repr__(self):
        return (f"<MatrixPosition(id={self.positionID}, user={self.userID}, level={self.level}, "
                f"parent={self.parentPositionID}, slot={self.slotIndex}, status={self.status})>")
