"""
Database operations for the TA pipeline.
Candle source, feature sink and latest-features refresh on SQLAlchemy.

Storage exceptions are wrapped at the call site: connection-level failures
become DatabaseConnectionError, everything else DatabaseQueryError, so the
recovery manager can pick the right strategy without inspecting messages.
"""

import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import (
    Boolean, Column, DateTime, Float, Index, Integer, String, UniqueConstraint,
    create_engine, delete, func, insert, select, and_,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from loguru import logger

from core.errors import DatabaseConnectionError, DatabaseQueryError
from core.models import Candle, FeatureRecord, FEATURE_VALUE_FIELDS, Task, ensure_utc

# Database base class
Base = declarative_base()


class FeatureColumns:
    """Value columns shared by ta_features and ta_latest."""
    close = Column(Float, nullable=False)

    # Moving averages
    sma7 = Column(Float)
    sma20 = Column(Float)
    sma50 = Column(Float)
    sma200 = Column(Float)
    ema7 = Column(Float)
    ema20 = Column(Float)
    ema50 = Column(Float)
    ema200 = Column(Float)

    # Oscillators
    rsi14 = Column(Float)
    macd = Column(Float)
    macd_signal = Column(Float)
    macd_hist = Column(Float)

    # Volatility
    atr14 = Column(Float)
    bb_width = Column(Float)
    bb_width_pr60 = Column(Float)

    # Channel / breakout
    donchian_high_20 = Column(Float)
    donchian_low_20 = Column(Float)
    breakout_high_20 = Column(Boolean)
    breakout_low_20 = Column(Boolean)
    near_breakout_high = Column(Boolean)

    # Volume
    vol_ma20 = Column(Float)
    vol_z60 = Column(Float)
    vol_z60_slope6 = Column(Float)

    # Crossovers / divergence
    cross_ema7_over_ema20 = Column(Boolean)
    cross_ema50_over_ema200 = Column(Boolean)
    bullish_rsi_divergence = Column(Boolean)

    # VWAP
    vwap = Column(Float)
    vwap_distance = Column(Float)
    vwap_upper = Column(Float)
    vwap_lower = Column(Float)
    vwap_band_position = Column(Float)
    vwap_breakout_bullish = Column(Boolean)
    vwap_breakout_bearish = Column(Boolean)

    # Support / resistance
    support_level = Column(Float)
    resistance_level = Column(Float)
    support_distance = Column(Float)
    resistance_distance = Column(Float)
    near_support = Column(Boolean)
    near_resistance = Column(Boolean)

    # Composite scores
    smart_money_index = Column(Float)
    smart_money_bullish = Column(Boolean)
    trend_alignment_score = Column(Float)
    trend_alignment_strong = Column(Boolean)
    volume_profile_score = Column(Float)


class CandleRow(Base):
    """OHLCV candle record."""
    __tablename__ = 'candles'

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_id = Column(String(64), nullable=False)
    timeframe = Column(String(8), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    open = Column(Float, nullable=False)
    high = Column(Float, nullable=False)
    low = Column(Float, nullable=False)
    close = Column(Float, nullable=False)
    volume = Column(Float, nullable=False, default=0.0)
    quote_volume = Column(Float, nullable=False, default=0.0)

    __table_args__ = (
        UniqueConstraint('token_id', 'timeframe', 'timestamp', name='uq_candle_key'),
        Index('idx_candle_series', 'token_id', 'timeframe', 'timestamp'),
    )

    def to_candle(self) -> Candle:
        return Candle(
            timestamp=ensure_utc(self.timestamp),
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
            quote_volume=self.quote_volume or 0.0,
        )


class FeatureRow(FeatureColumns, Base):
    """Computed TA feature record, one per candle."""
    __tablename__ = 'ta_features'

    token_id = Column(String(64), primary_key=True)
    timeframe = Column(String(8), primary_key=True)
    timestamp = Column(DateTime, primary_key=True)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc).replace(tzinfo=None))

    def to_record(self) -> FeatureRecord:
        data = {name: getattr(self, name) for name in FEATURE_VALUE_FIELDS}
        data.update(token_id=self.token_id, timeframe=self.timeframe, timestamp=self.timestamp)
        return FeatureRecord.from_dict(data)


class LatestFeatureRow(FeatureColumns, Base):
    """Latest feature record per (token_id, timeframe), rebuilt by refresh_latest_view()."""
    __tablename__ = 'ta_latest'

    token_id = Column(String(64), primary_key=True)
    timeframe = Column(String(8), primary_key=True)
    timestamp = Column(DateTime, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in FEATURE_VALUE_FIELDS}
        data.update(
            token_id=self.token_id,
            timeframe=self.timeframe,
            timestamp=ensure_utc(self.timestamp).isoformat(),
        )
        return data


def _naive_utc(value: datetime) -> datetime:
    return ensure_utc(value).replace(tzinfo=None)


def _wrap_storage_error(error: Exception, operation: str, context: Dict[str, Any]) -> Exception:
    context = dict(context, operation=operation)
    if isinstance(error, (OperationalError, InterfaceError, DisconnectionError)):
        return DatabaseConnectionError(f"{operation} failed: {error}", context)
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return DatabaseConnectionError(f"{operation} failed: {error}", context)
    return DatabaseQueryError(f"{operation} failed: {error}", context)


class DatabaseManager:
    """
    Database manager for candles and TA features.
    Implements the candle source and feature sink used by the pipeline.
    """

    def __init__(self, database_url: str = "sqlite:///data/ta_pipeline.db", echo: bool = False):
        """
        Initialize database manager.

        Args:
            database_url: SQLAlchemy URL (sqlite file, sqlite memory or postgresql)
            echo: Log every SQL statement
        """
        self.database_url = database_url

        if database_url.startswith("sqlite"):
            path = database_url.split("///", 1)[-1]
            if path and path != ":memory:" and os.path.dirname(path):
                os.makedirs(os.path.dirname(path), exist_ok=True)
            self.engine = create_engine(
                database_url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False, "timeout": 30},
                echo=echo,
            )
        else:
            self.engine = create_engine(database_url, echo=echo, pool_pre_ping=True, pool_recycle=3600)

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self.create_tables()

        logger.info(f"Database initialized: {self.engine.url.render_as_string(hide_password=True)}")

    def create_tables(self):
        """Create all database tables."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created/verified")

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """
        Get database session with automatic cleanup.

        Yields:
            SQLAlchemy session
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        finally:
            session.close()

    def _insert_statement(self, table):
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            return sqlite_insert(table)
        if dialect == "postgresql":
            return pg_insert(table)
        raise DatabaseQueryError(f"Upsert is not supported for dialect {dialect}")

    def _upsert(self, session: Session, table, rows: List[Dict[str, Any]], key_columns: List[str]) -> None:
        stmt = self._insert_statement(table)
        update_columns = {
            c.name: stmt.excluded[c.name]
            for c in table.columns
            if c.name not in key_columns and c.name != "id"
        }
        session.execute(stmt.values(rows).on_conflict_do_update(index_elements=key_columns, set_=update_columns))

    async def fetch_candles(self, token_id: str, timeframe: str, limit: int = 1000) -> List[Candle]:
        """
        Fetch the most recent candles of a series.

        Args:
            token_id: Token identifier
            timeframe: Timeframe label
            limit: Maximum number of candles

        Returns:
            Candles in ascending time order
        """
        try:
            with self.get_session() as session:
                rows = session.execute(
                    select(CandleRow)
                    .where(CandleRow.token_id == token_id, CandleRow.timeframe == timeframe)
                    .order_by(CandleRow.timestamp.desc())
                    .limit(limit)
                ).scalars().all()
                candles = [row.to_candle() for row in rows]
        except SQLAlchemyError as e:
            raise _wrap_storage_error(e, "fetch_candles", {"token_id": token_id, "timeframe": timeframe}) from e

        candles.reverse()
        return candles

    async def insert_candles(self, token_id: str, timeframe: str, candles: Sequence[Candle]) -> int:
        """Upsert candles of one series, keyed by timestamp."""
        if not candles:
            return 0
        rows = [
            {
                "token_id": token_id,
                "timeframe": timeframe,
                "timestamp": _naive_utc(c.timestamp),
                "open": c.open,
                "high": c.high,
                "low": c.low,
                "close": c.close,
                "volume": c.volume,
                "quote_volume": c.quote_volume,
            }
            for c in candles
        ]
        try:
            with self.get_session() as session:
                self._upsert(session, CandleRow.__table__, rows, ["token_id", "timeframe", "timestamp"])
        except SQLAlchemyError as e:
            raise _wrap_storage_error(e, "insert_candles", {"token_id": token_id, "timeframe": timeframe}) from e

        logger.debug(f"Stored {len(rows)} candles for {token_id}:{timeframe}")
        return len(rows)

    async def upsert_features(self, records: Sequence[FeatureRecord]) -> int:
        """
        Idempotent upsert keyed by (token_id, timeframe, timestamp).

        Args:
            records: Feature records (callers chunk large batches)

        Returns:
            Number of rows written
        """
        if not records:
            return 0
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        rows = []
        for record in records:
            row = {name: getattr(record, name) for name in FEATURE_VALUE_FIELDS}
            row.update(
                token_id=record.token_id,
                timeframe=record.timeframe,
                timestamp=_naive_utc(record.timestamp),
                updated_at=now,
            )
            rows.append(row)

        try:
            with self.get_session() as session:
                self._upsert(session, FeatureRow.__table__, rows, ["token_id", "timeframe", "timestamp"])
        except SQLAlchemyError as e:
            first = records[0]
            raise _wrap_storage_error(
                e, "upsert_features", {"token_id": first.token_id, "timeframe": first.timeframe}
            ) from e
        return len(rows)

    async def refresh_latest_view(self) -> None:
        """Rebuild ta_latest from the newest ta_features row of every series."""
        features = FeatureRow.__table__
        latest = LatestFeatureRow.__table__
        newest = (
            select(
                features.c.token_id,
                features.c.timeframe,
                func.max(features.c.timestamp).label("max_ts"),
            )
            .group_by(features.c.token_id, features.c.timeframe)
            .subquery()
        )
        columns = ["token_id", "timeframe", "timestamp", *FEATURE_VALUE_FIELDS]
        source = select(*(features.c[name] for name in columns)).join(
            newest,
            and_(
                features.c.token_id == newest.c.token_id,
                features.c.timeframe == newest.c.timeframe,
                features.c.timestamp == newest.c.max_ts,
            ),
        )
        try:
            with self.get_session() as session:
                session.execute(delete(latest))
                session.execute(insert(latest).from_select(columns, source))
        except SQLAlchemyError as e:
            raise _wrap_storage_error(e, "refresh_latest_view", {}) from e
        logger.info("Refreshed ta_latest")

    async def get_features(self, token_id: str, timeframe: str, limit: Optional[int] = None) -> List[FeatureRecord]:
        """Stored feature records of a series in ascending time order."""
        try:
            with self.get_session() as session:
                query = (
                    select(FeatureRow)
                    .where(FeatureRow.token_id == token_id, FeatureRow.timeframe == timeframe)
                    .order_by(FeatureRow.timestamp.desc())
                )
                if limit:
                    query = query.limit(limit)
                records = [row.to_record() for row in session.execute(query).scalars().all()]
        except SQLAlchemyError as e:
            raise _wrap_storage_error(e, "get_features", {"token_id": token_id, "timeframe": timeframe}) from e
        records.reverse()
        return records

    async def get_latest(self, token_id: Optional[str] = None) -> List[Dict[str, Any]]:
        try:
            with self.get_session() as session:
                query = select(LatestFeatureRow).order_by(LatestFeatureRow.token_id, LatestFeatureRow.timeframe)
                if token_id:
                    query = query.where(LatestFeatureRow.token_id == token_id)
                return [row.to_dict() for row in session.execute(query).scalars().all()]
        except SQLAlchemyError as e:
            raise _wrap_storage_error(e, "get_latest", {"token_id": token_id}) from e

    async def list_series(self) -> List[Task]:
        """Distinct (token_id, timeframe) pairs that have candles."""
        try:
            with self.get_session() as session:
                rows = session.execute(
                    select(CandleRow.token_id, CandleRow.timeframe)
                    .distinct()
                    .order_by(CandleRow.token_id, CandleRow.timeframe)
                ).all()
        except SQLAlchemyError as e:
            raise _wrap_storage_error(e, "list_series", {}) from e
        return [Task(token_id=row[0], timeframe=row[1]) for row in rows]

    async def close(self):
        """Close database connections."""
        self.engine.dispose()
        logger.info("Database connections closed")
