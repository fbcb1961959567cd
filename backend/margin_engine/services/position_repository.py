import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, update
from sqlalchemy.orm import Session

from margin_engine.core.logging import get_logger
from margin_engine.core.scheduler import utc_now
from margin_engine.models.alert import SecurityAlert as SecurityAlertModel
from margin_engine.models.margin import (
    LiquidationRecord as LiquidationRecordModel,
    MarginPosition as MarginPositionModel,
    PositionStatus,
    UserLeverageSettings as UserLeverageSettingsModel,
)
from margin_engine.schemas.margin import (
    LiquidationRecord,
    LiquidationRecordCreate,
    MarginPosition,
    MarginPositionCreate,
    SecurityAlert,
    SecurityAlertCreate,
    UserLeverageSettings,
)

logger = get_logger(__name__)


class BasePositionRepository(ABC):
    """Storage operations the risk engine depends on"""

    @abstractmethod
    def get_user_margin_positions(self, user_id: str, status: PositionStatus) -> List[MarginPosition]:
        """Get a user's positions with the given status"""
        pass

    @abstractmethod
    def get_margin_positions_by_pair(self, trading_pair: str, status: PositionStatus) -> List[MarginPosition]:
        """Get all positions on a trading pair with the given status"""
        pass

    @abstractmethod
    def get_open_trading_pairs(self) -> List[str]:
        """Get the distinct trading pairs that have at least one open position"""
        pass

    @abstractmethod
    def get_margin_position(self, position_id: str) -> Optional[MarginPosition]:
        pass

    @abstractmethod
    def update_margin_position(self, position_id: str, fields: Dict[str, Any],
                               expected_status: Optional[PositionStatus] = None) -> bool:
        """
        Apply a partial update. When expected_status is given the update only
        happens if the position currently has that status. Returns True if a row changed.
        """
        pass

    @abstractmethod
    def create_liquidation_record(self, record: LiquidationRecordCreate) -> LiquidationRecord:
        pass

    @abstractmethod
    def record_liquidation(self, record: LiquidationRecordCreate, fields: Dict[str, Any]) -> bool:
        """
        Append the liquidation record and transition the position in one unit.
        Returns False (and writes nothing) if the position is no longer open.
        """
        pass

    @abstractmethod
    def get_user_leverage_settings(self, user_id: str) -> Optional[UserLeverageSettings]:
        pass

    @abstractmethod
    def create_security_alert(self, alert: SecurityAlertCreate) -> SecurityAlert:
        pass


class SqlAlchemyPositionRepository(BasePositionRepository):
    """
    Repository backed by SQLAlchemy.

    Every call opens its own session, so one instance can be shared by the
    worker threads of a monitoring tick. Results are detached pydantic snapshots.
    """

    def __init__(self, session_factory: Callable[[], Session], clock: Callable[[], Any] = utc_now):
        self.session_factory = session_factory
        self.clock = clock

    # ------------------------------------------------------------------ #
    # Positions
    # ------------------------------------------------------------------ #
    def get_user_margin_positions(self, user_id: str, status: PositionStatus) -> List[MarginPosition]:
        with self.session_factory() as db:
            rows = db.query(MarginPositionModel).filter(
                and_(
                    MarginPositionModel.user_id == user_id,
                    MarginPositionModel.status == PositionStatus(status).value
                )
            ).order_by(MarginPositionModel.created_at, MarginPositionModel.id).all()
            return [MarginPosition.model_validate(row) for row in rows]

    def get_margin_positions_by_pair(self, trading_pair: str, status: PositionStatus) -> List[MarginPosition]:
        with self.session_factory() as db:
            rows = db.query(MarginPositionModel).filter(
                and_(
                    MarginPositionModel.trading_pair == trading_pair,
                    MarginPositionModel.status == PositionStatus(status).value
                )
            ).all()
            return [MarginPosition.model_validate(row) for row in rows]

    def get_open_trading_pairs(self) -> List[str]:
        with self.session_factory() as db:
            rows = db.query(MarginPositionModel.trading_pair).filter(
                MarginPositionModel.status == PositionStatus.OPEN.value
            ).distinct().all()
            return sorted(pair for (pair,) in rows)

    def get_margin_position(self, position_id: str) -> Optional[MarginPosition]:
        with self.session_factory() as db:
            row = db.get(MarginPositionModel, position_id)
            return MarginPosition.model_validate(row) if row else None

    def create_margin_position(self, position_in: MarginPositionCreate) -> MarginPosition:
        with self.session_factory() as db:
            row = MarginPositionModel(
                **position_in.model_dump(mode="json"),
                status=PositionStatus.OPEN.value,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            logger.info("Margin position created", position_id=row.id, user_id=row.user_id)
            return MarginPosition.model_validate(row)

    def update_margin_position(self, position_id: str, fields: Dict[str, Any],
                               expected_status: Optional[PositionStatus] = None) -> bool:
        with self.session_factory() as db:
            changed = self._update_position(db, position_id, fields, expected_status)
            db.commit()
            return changed

    # ------------------------------------------------------------------ #
    # Liquidations
    # ------------------------------------------------------------------ #
    def create_liquidation_record(self, record: LiquidationRecordCreate) -> LiquidationRecord:
        with self.session_factory() as db:
            row = LiquidationRecordModel(**record.model_dump(mode="json"))
            db.add(row)
            db.commit()
            db.refresh(row)
            return LiquidationRecord.model_validate(row)

    def record_liquidation(self, record: LiquidationRecordCreate, fields: Dict[str, Any]) -> bool:
        with self.session_factory() as db:
            try:
                changed = self._update_position(db, record.position_id, fields, PositionStatus.OPEN)
                if not changed:
                    db.rollback()
                    return False
                db.add(LiquidationRecordModel(**record.model_dump(mode="json")))
                db.commit()
                return True
            except Exception:
                db.rollback()
                raise

    def get_liquidation_records(self, user_id: str) -> List[LiquidationRecord]:
        with self.session_factory() as db:
            rows = db.query(LiquidationRecordModel).filter(
                LiquidationRecordModel.user_id == user_id
            ).order_by(LiquidationRecordModel.created_at).all()
            return [LiquidationRecord.model_validate(row) for row in rows]

    # ------------------------------------------------------------------ #
    # Settings
    # ------------------------------------------------------------------ #
    def get_user_leverage_settings(self, user_id: str) -> Optional[UserLeverageSettings]:
        with self.session_factory() as db:
            row = db.get(UserLeverageSettingsModel, user_id)
            return UserLeverageSettings.model_validate(row) if row else None

    def upsert_user_leverage_settings(self, settings_in: UserLeverageSettings) -> UserLeverageSettings:
        with self.session_factory() as db:
            row = db.get(UserLeverageSettingsModel, settings_in.user_id)
            if row is None:
                row = UserLeverageSettingsModel(user_id=settings_in.user_id)
                db.add(row)
            row.auto_deleverage_enabled = settings_in.auto_deleverage_enabled
            row.liquidation_warning_enabled = settings_in.liquidation_warning_enabled
            db.commit()
            db.refresh(row)
            return UserLeverageSettings.model_validate(row)

    # ------------------------------------------------------------------ #
    # Alerts
    # ------------------------------------------------------------------ #
    def create_security_alert(self, alert: SecurityAlertCreate) -> SecurityAlert:
        with self.session_factory() as db:
            row = SecurityAlertModel(
                wallet_address=alert.wallet_address,
                alert_type=alert.alert_type.value,
                severity=alert.severity.value,
                title=alert.title,
                description=alert.description,
                alert_metadata=json.dumps(alert.metadata, default=str),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return self._to_alert(row)

    def get_security_alerts(self, wallet_address: str) -> List[SecurityAlert]:
        with self.session_factory() as db:
            rows = db.query(SecurityAlertModel).filter(
                SecurityAlertModel.wallet_address == wallet_address
            ).order_by(SecurityAlertModel.created_at).all()
            return [self._to_alert(row) for row in rows]

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    def _update_position(self, db: Session, position_id: str, fields: Dict[str, Any],
                         expected_status: Optional[PositionStatus]) -> bool:
        values = {
            key: (value.value if isinstance(value, PositionStatus) else value)
            for key, value in fields.items()
        }
        values["updated_at"] = self.clock()
        stmt = update(MarginPositionModel).where(MarginPositionModel.id == position_id)
        if expected_status is not None:
            stmt = stmt.where(MarginPositionModel.status == PositionStatus(expected_status).value)
        result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
        return result.rowcount > 0

    @staticmethod
    def _to_alert(row: SecurityAlertModel) -> SecurityAlert:
        return SecurityAlert(
            id=row.id,
            wallet_address=row.wallet_address,
            alert_type=row.alert_type,
            severity=row.severity,
            title=row.title,
            description=row.description or "",
            metadata=json.loads(row.alert_metadata) if row.alert_metadata else {},
            is_read=bool(row.is_read),
            created_at=row.created_at,
        )
