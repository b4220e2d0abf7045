from typing import List, Optional, Union
import structlog

from models import (
    PointError,
    PointErrorKind,
    PointHistory,
    PointPolicy,
    PointResult,
    PointSuccess,
    TransactionType,
    UserPoint,
)
from repositories import PointHistoryRepository, StoreError, UserPointRepository
from locks import LockAcquireTimeout, UserLockRegistry

logger = structlog.get_logger()


class PointService:
    """Serializes charge/use per user and applies the point policy.

    Balance read, validation, balance write and the history append all happen
    while the user's lock is held, so a user's history order is the order in
    which their balance changed. Queries and amount rejections do not take
    the lock.
    """

    def __init__(
        self,
        user_point_repo: UserPointRepository,
        point_history_repo: PointHistoryRepository,
        lock_registry: UserLockRegistry,
        policy: Optional[PointPolicy] = None,
    ):
        self.user_point_repo = user_point_repo
        self.point_history_repo = point_history_repo
        self.lock_registry = lock_registry
        self.policy = policy or PointPolicy()

    async def get_balance(self, user_id: int) -> Union[UserPoint, PointError]:
        try:
            return await self.user_point_repo.read(user_id)
        except StoreError as e:
            return self._store_failure(user_id, e, operation="get_balance")

    async def get_history(self, user_id: int) -> Union[List[PointHistory], PointError]:
        try:
            return await self.point_history_repo.list_by_user(user_id)
        except StoreError as e:
            return self._store_failure(user_id, e, operation="get_history")

    async def charge(self, user_id: int, amount: int) -> PointResult:
        logger.info("Processing charge", user_id=user_id, amount=amount)
        invalid = self._check_amount(user_id, amount, self.policy.max_charge_amount)
        if invalid is not None:
            return invalid
        if amount < self.policy.min_charge_amount:
            return await self._reject_small_charge(user_id, amount)
        return await self._apply(user_id, amount, TransactionType.CHARGE)

    async def use(self, user_id: int, amount: int) -> PointResult:
        logger.info("Processing use", user_id=user_id, amount=amount)
        invalid = self._check_amount(
            user_id,
            amount,
            self.policy.max_use_amount,
            self.policy.min_use_amount,
        )
        if invalid is not None:
            return invalid
        return await self._apply(user_id, amount, TransactionType.USE)

    def _check_amount(
        self, user_id: int, amount: int, maximum: int, minimum: int = 1
    ) -> Optional[PointError]:
        if amount <= 0:
            detail = "Amount must be greater than zero"
        elif amount < minimum:
            detail = f"Amount must be at least {minimum}"
        elif amount > maximum:
            detail = f"Amount must be at most {maximum}"
        else:
            return None
        return self._invalid_amount(user_id, amount, detail)

    def _invalid_amount(self, user_id: int, amount: int, detail: str) -> PointError:
        logger.warning("Invalid amount", user_id=user_id, amount=amount, detail=detail)
        return PointError(kind=PointErrorKind.INVALID_AMOUNT, detail=detail, user_id=user_id)

    async def _reject_small_charge(self, user_id: int, amount: int) -> PointError:
        """Reject a charge under the minimum without taking the user's lock.

        The ceiling is reported first when the charge would also exceed it.
        Nothing is written on either branch, so a lock-free read is enough.
        """
        try:
            current = await self.user_point_repo.read(user_id)
        except StoreError as e:
            return self._store_failure(user_id, e, type=TransactionType.CHARGE, amount=amount)

        over_ceiling = self._check_ceiling(current, amount)
        if over_ceiling is not None:
            return over_ceiling
        return self._invalid_amount(
            user_id, amount, f"Amount must be at least {self.policy.min_charge_amount}"
        )

    async def _apply(self, user_id: int, amount: int, type: TransactionType) -> PointResult:
        try:
            handle = await self.lock_registry.acquire(user_id, self.policy.lock_timeout_seconds)
        except LockAcquireTimeout as e:
            return PointError(
                kind=PointErrorKind.LOCK_TIMEOUT,
                detail=f"Request delayed by concurrent requests ({e.timeout}s), please retry",
                user_id=user_id,
            )
        try:
            return await self._apply_locked(user_id, amount, type)
        finally:
            self.lock_registry.release(handle)

    async def _apply_locked(
        self, user_id: int, amount: int, type: TransactionType
    ) -> PointResult:
        try:
            current = await self.user_point_repo.read(user_id)
        except StoreError as e:
            return self._store_failure(user_id, e, type=type, amount=amount)

        if type == TransactionType.CHARGE:
            new_point = self._process_charge(current, amount)
        else:
            new_point = self._process_use(current, amount)
        if isinstance(new_point, PointError):
            return new_point

        try:
            updated = await self.user_point_repo.write(user_id, new_point)
        except StoreError as e:
            return self._store_failure(user_id, e, type=type, amount=amount)

        try:
            await self.point_history_repo.append(user_id, type, amount, updated.updated_at)
        except StoreError as e:
            # The balance stays written; no compensating write is attempted.
            return self._store_failure(user_id, e, committed=True, type=type, amount=amount)

        logger.info(
            "Point transaction processed",
            user_id=user_id,
            type=type.value,
            amount=amount,
            balance=updated.point,
        )
        return PointSuccess(point=updated)

    def _check_ceiling(self, current: UserPoint, amount: int) -> Optional[PointError]:
        if current.point + amount <= self.policy.max_balance:
            return None

        logger.warning(
            "Balance ceiling exceeded",
            user_id=current.id,
            current_balance=current.point,
            requested_amount=amount,
            max_balance=self.policy.max_balance,
        )
        return PointError(
            kind=PointErrorKind.BALANCE_CEILING_EXCEEDED,
            detail=f"Balance may not exceed {self.policy.max_balance}",
            user_id=current.id,
        )

    def _process_charge(self, current: UserPoint, amount: int) -> Union[int, PointError]:
        over_ceiling = self._check_ceiling(current, amount)
        if over_ceiling is not None:
            return over_ceiling

        new_point = current.point + amount

        logger.debug(
            "Charge processed",
            user_id=current.id,
            amount=amount,
            old_balance=current.point,
            new_balance=new_point,
        )
        return new_point

    def _process_use(self, current: UserPoint, amount: int) -> Union[int, PointError]:
        if amount > current.point:
            logger.warning(
                "Insufficient balance for use",
                user_id=current.id,
                current_balance=current.point,
                requested_amount=amount,
            )
            return PointError(
                kind=PointErrorKind.INSUFFICIENT_BALANCE,
                detail="Insufficient balance",
                user_id=current.id,
            )

        new_point = current.point - amount

        logger.debug(
            "Use processed",
            user_id=current.id,
            amount=amount,
            old_balance=current.point,
            new_balance=new_point,
        )
        return new_point

    def _store_failure(
        self,
        user_id: int,
        error: StoreError,
        committed: bool = False,
        **context,
    ) -> PointError:
        if isinstance(context.get("type"), TransactionType):
            context["type"] = context["type"].value
        logger.error(
            "Point store failure",
            user_id=user_id,
            balance_committed=committed,
            error=str(error),
            exc_info=error,
            **context,
        )
        if committed:
            detail = "Balance updated but the history record could not be saved"
        elif "operation" in context:
            detail = "Point data could not be read"
        else:
            detail = "Balance could not be updated"
        return PointError(
            kind=PointErrorKind.STORE_FAILURE,
            detail=detail,
            user_id=user_id,
            balance_committed=committed,
        )


# Factory function for dependency injection
def get_point_service(
    user_point_repo: UserPointRepository,
    point_history_repo: PointHistoryRepository,
    lock_registry: UserLockRegistry,
    policy: Optional[PointPolicy] = None,
) -> PointService:
    return PointService(user_point_repo, point_history_repo, lock_registry, policy)
