"""
Database Models for the copy trading bot

The trade journal is an optional audit trail of every attempted trade,
grouped by execution cycle. Uses SQLAlchemy with async support.
"""

from datetime import datetime
from typing import List, Optional, TYPE_CHECKING
from sqlalchemy import (
    Column, String, Float, Integer, Boolean, DateTime, Text, Enum as SQLEnum, select
)
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.ext.asyncio import async_sessionmaker
from loguru import logger
import enum

if TYPE_CHECKING:
    from .trade_executor import TradeResult

Base = declarative_base()


class TradeSide(enum.Enum):
    """Trade direction"""
    BUY = "buy"
    SELL = "sell"


class ExecutedTrade(Base):
    """
    One attempted trade, successful or not
    """
    __tablename__ = "executed_trades"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cycle = Column(Integer, nullable=False, index=True)

    market = Column(String(100), nullable=False, index=True)
    outcome = Column(String(50), nullable=False)
    side = Column(SQLEnum(TradeSide), nullable=False)
    size = Column(Float, nullable=False)
    price = Column(Float, nullable=False)

    success = Column(Boolean, nullable=False)
    order_id = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        status = "OK" if self.success else "FAILED"
        return f"<ExecutedTrade(cycle={self.cycle}, {self.side.value} {self.size}@{self.price} {status})>"


class TradeJournal:
    """
    Appends TradeResults to the executed_trades table
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker] = None

    async def initialize(self):
        """Create the engine and tables"""
        if self._engine is not None:
            return

        self._engine = create_async_engine(self.database_url, echo=False)

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False)
        logger.info(f"Trade journal ready at {self.database_url}")

    async def record(self, cycle: int, results: List["TradeResult"]) -> int:
        """Store one execution cycle's results, returns rows written"""
        if not results:
            return 0

        await self.initialize()

        async with self._sessionmaker() as session:
            session.add_all([
                ExecutedTrade(
                    cycle=cycle,
                    market=r.market,
                    outcome=r.outcome,
                    side=r.side,
                    size=r.size,
                    price=r.price,
                    success=r.success,
                    order_id=r.order_id,
                    error_message=r.error,
                )
                for r in results
            ])
            await session.commit()

        return len(results)

    async def recent(self, limit: int = 20) -> List[ExecutedTrade]:
        """Most recent journal entries, newest first"""
        await self.initialize()

        async with self._sessionmaker() as session:
            result = await session.execute(
                select(ExecutedTrade)
                .order_by(ExecutedTrade.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def close(self):
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None
