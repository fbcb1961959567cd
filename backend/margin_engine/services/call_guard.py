import threading
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Optional, TypeVar

from margin_engine.core.exceptions import CollaboratorTimeoutError
from margin_engine.core.logging import get_logger
from margin_engine.models.margin import PositionStatus
from margin_engine.schemas.margin import (
    LiquidationRecord,
    LiquidationRecordCreate,
    MarginPosition,
    SecurityAlert,
    SecurityAlertCreate,
    UserLeverageSettings,
)
from margin_engine.services.position_repository import BasePositionRepository

logger = get_logger(__name__)

T = TypeVar("T")


class CallGuard:
    """
    Runs each collaborator call on its own daemon thread and waits at most
    `timeout` seconds for it.

    A call that times out keeps running in the background and its key is
    marked hung. Until it finishes, further calls with the same key fail
    immediately instead of starting another thread, so one stuck symbol or
    query costs at most one thread no matter how many ticks run.
    """

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._hung: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def call(self, operation: str, fn: Callable[..., T], *args, key: Optional[str] = None) -> T:
        call_key = key or operation
        with self._lock:
            if call_key in self._hung:
                logger.warning(f"Collaborator call still hung, not retrying: {call_key}")
                raise CollaboratorTimeoutError(operation, self.timeout)

        future: Future = Future()
        worker = threading.Thread(
            target=self._run,
            args=(future, fn, args),
            name=f"margin-risk-call-{operation}",
            daemon=True,
        )
        worker.start()
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            with self._lock:
                self._hung[call_key] = future
            # runs immediately if the call finished in the meantime
            future.add_done_callback(lambda f: self._clear(call_key, f))
            logger.warning(f"Collaborator call timed out: {operation}", key=call_key, timeout=self.timeout)
            raise CollaboratorTimeoutError(operation, self.timeout)

    def hung_calls(self) -> List[str]:
        with self._lock:
            return sorted(self._hung)

    @staticmethod
    def _run(future: Future, fn: Callable[..., Any], args: tuple) -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn(*args)
        except BaseException as e:
            future.set_exception(e)
        else:
            future.set_result(result)

    def _clear(self, call_key: str, future: Future) -> None:
        with self._lock:
            if self._hung.get(call_key) is future:
                del self._hung[call_key]
        logger.info(f"Hung collaborator call finished: {call_key}")


class GuardedPositionRepository(BasePositionRepository):
    """Delegates to another repository with every call bounded by a CallGuard"""

    def __init__(self, repository: BasePositionRepository, guard: CallGuard):
        self.repository = repository
        self.guard = guard

    def get_user_margin_positions(self, user_id: str, status: PositionStatus) -> List[MarginPosition]:
        return self.guard.call("get_user_margin_positions", self.repository.get_user_margin_positions,
                               user_id, status, key=f"get_user_margin_positions:{user_id}")

    def get_margin_positions_by_pair(self, trading_pair: str, status: PositionStatus) -> List[MarginPosition]:
        return self.guard.call("get_margin_positions_by_pair", self.repository.get_margin_positions_by_pair,
                               trading_pair, status, key=f"get_margin_positions_by_pair:{trading_pair}")

    def get_open_trading_pairs(self) -> List[str]:
        return self.guard.call("get_open_trading_pairs", self.repository.get_open_trading_pairs)

    def get_margin_position(self, position_id: str) -> Optional[MarginPosition]:
        return self.guard.call("get_margin_position", self.repository.get_margin_position,
                               position_id, key=f"get_margin_position:{position_id}")

    def update_margin_position(self, position_id: str, fields: Dict[str, Any],
                               expected_status: Optional[PositionStatus] = None) -> bool:
        return self.guard.call("update_margin_position", self.repository.update_margin_position,
                               position_id, fields, expected_status, key=f"update_margin_position:{position_id}")

    def create_liquidation_record(self, record: LiquidationRecordCreate) -> LiquidationRecord:
        return self.guard.call("create_liquidation_record", self.repository.create_liquidation_record,
                               record, key=f"create_liquidation_record:{record.position_id}")

    def record_liquidation(self, record: LiquidationRecordCreate, fields: Dict[str, Any]) -> bool:
        return self.guard.call("record_liquidation", self.repository.record_liquidation,
                               record, fields, key=f"record_liquidation:{record.position_id}")

    def get_user_leverage_settings(self, user_id: str) -> Optional[UserLeverageSettings]:
        return self.guard.call("get_user_leverage_settings", self.repository.get_user_leverage_settings,
                               user_id, key=f"get_user_leverage_settings:{user_id}")

    def create_security_alert(self, alert: SecurityAlertCreate) -> SecurityAlert:
        return self.guard.call("create_security_alert", self.repository.create_security_alert,
                               alert, key=f"create_security_alert:{alert.wallet_address}")
