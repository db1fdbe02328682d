# models/matrix/level_config.py
"""
MatrixLevelConfig model - per-level matrix shape, prices and bonus rules.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, Boolean, JSON
from models.base import Base, AuditMixin


class MatrixLevelConfig(Base, AuditMixin):
    __tablename__ = 'matrix_level_config'

    level = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String, nullable=True)
    isActive = Column(Boolean, default=True)

    # Shape
    price = Column(DECIMAL(12, 2), nullable=False)
    width = Column(Integer, nullable=False)
    depth = Column(Integer, nullable=False)

    # Bonus rules, in percent of price
    referralBonusPct = Column(DECIMAL(7, 4), default=0)
    matrixBonusPct = Column(DECIMAL(7, 4), default=0)
    matchingBonusPct = Column(DECIMAL(7, 4), default=0)
    referralDepthPcts = Column(JSON, nullable=True)  # ["10", "5", "2"] - index 0 is direct sponsor

    # Recycling
    reentryEnabled = Column(Boolean, default=False)
    reentryCount = Column(Integer, default=1)
    crossEntries = Column(JSON, nullable=True)  # [{"level": 2, "count": 1}]

    # Non-root positions still inside an uncycled window
    positionsFilled = Column(Integer, default=0, nullable=False)

    @property
    def maxPositions(self) -> int:
        return self.width ** self.depth

    def __repr__(self):
        return (f"<MatrixLevelConfig(level={self.level}, {self.width}x{self.depth}, "
                f"open={self.positionsFilled}, cycle={self.maxPositions})>")
