# mlm_system/services/level_service.py
"""
Level registry - per-level matrix shape and bonus rules.
"""
from decimal import Decimal
from typing import List, Dict
from sqlalchemy.orm import Session
import logging

from models import MatrixLevelConfig, MatrixPosition
from mlm_system.errors import InvalidLevel

logger = logging.getLogger(__name__)

LEVEL_FIELDS = (
    "name", "isActive", "price", "width", "depth",
    "referralBonusPct", "matrixBonusPct", "matchingBonusPct", "referralDepthPcts",
    "reentryEnabled", "reentryCount", "crossEntries",
)


class LevelService:
    """Service for reading and maintaining level configuration."""

    def __init__(self, session: Session):
        self.session = session

    def getLevel(self, level: int) -> MatrixLevelConfig:
        """Active level config or InvalidLevel."""
        levelConfig = self.session.query(MatrixLevelConfig).filter_by(level=level).first()
        if not levelConfig or not levelConfig.isActive:
            raise InvalidLevel(level)
        return levelConfig

    @staticmethod
    def referralPercentages(levelConfig: MatrixLevelConfig) -> List[Decimal]:
        """Per-depth referral percentages, index 0 is the direct sponsor."""
        if levelConfig.referralDepthPcts:
            return [Decimal(str(pct)) for pct in levelConfig.referralDepthPcts]
        return [Decimal(str(levelConfig.referralBonusPct or 0))]

    async def listLevels(self) -> List[MatrixLevelConfig]:
        return self.session.query(MatrixLevelConfig).order_by(MatrixLevelConfig.level).all()

    async def upsertLevel(self, level: int, **fields) -> MatrixLevelConfig:
        """
        Create or update a level.

        Width and depth cannot change once the level has positions, the
        tree would no longer match its shape.
        """
        unknown = set(fields) - set(LEVEL_FIELDS)
        if unknown:
            raise ValueError(f"Unknown level fields: {', '.join(sorted(unknown))}")

        width = fields.get("width")
        depth = fields.get("depth")
        if width is not None and int(width) < 1:
            raise ValueError("Width must be at least 1")
        if depth is not None and int(depth) < 1:
            raise ValueError("Depth must be at least 1")

        levelConfig = self.session.query(MatrixLevelConfig).filter_by(level=level).first()

        if levelConfig is None:
            if width is None or depth is None or fields.get("price") is None:
                raise ValueError("New level needs price, width and depth")
            levelConfig = MatrixLevelConfig(level=level, positionsFilled=0)
            self.session.add(levelConfig)
            logger.info(f"Creating matrix level {level}")
        else:
            shapeChanged = (
                    (width is not None and int(width) != levelConfig.width) or
                    (depth is not None and int(depth) != levelConfig.depth)
            )
            if shapeChanged:
                hasPositions = self.session.query(MatrixPosition).filter_by(level=level).first()
                if hasPositions:
                    raise ValueError(f"Level {level} already has positions, shape is frozen")

        for key, value in fields.items():
            setattr(levelConfig, key, value)

        self.session.commit()
        logger.info(f"Matrix level saved: {levelConfig}")
        return levelConfig

    async def seedLevels(self, levels: Dict[int, Dict]) -> int:
        """Write levels when the registry is empty. Returns number created."""
        if self.session.query(MatrixLevelConfig).count():
            return 0

        for level, fields in sorted(levels.items()):
            await self.upsertLevel(level, **fields)

        logger.info(f"Seeded {len(levels)} matrix levels")
        return len(levels)
