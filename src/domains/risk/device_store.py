"""Per-(user, device) trust records and signal processing."""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from src.shared.locks import KeyedLock

from .config import RiskConfig, default_config
from .errors import ConflictError, InvalidInputError, NotFoundError, PersistenceFailureError
from .interfaces import DevicePersistence
from .models import DeviceTrustLevel, DeviceTrustRecord, TrustSignal
from .trust import apply_manual_overrides, classify_trust_level, compute_trust

logger = structlog.get_logger()


class DeviceTrustStore:
    """Owns device trust records. The risk engine only ever calls ``get``.

    Updates to one (user_id, device_key) pair are serialized by a per-key lock
    in-process and by the persistence version check across processes; a lost
    race is retried from a fresh read.
    """

    def __init__(
        self,
        persistence: DevicePersistence,
        config: RiskConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._persistence = persistence
        self._config = config or default_config
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks = KeyedLock()

    async def get(self, user_id: str, device_key: str) -> DeviceTrustRecord | None:
        return await self._persistence.find_by_user_and_key(user_id, device_key)

    async def list_user_devices(self, user_id: str) -> list[DeviceTrustRecord]:
        return await self._persistence.list_by_user(user_id)

    async def get_or_create(
        self,
        user_id: str,
        device_key: str,
        device_name: str | None = None,
    ) -> DeviceTrustRecord:
        _validate_key(user_id, device_key)
        async with self._locks.hold((user_id, device_key)):
            existing = await self._persistence.find_by_user_and_key(user_id, device_key)
            if existing is not None:
                return existing
            try:
                return await self._persistence.create(
                    self._new_record(user_id, device_key, device_name)
                )
            except ConflictError:
                # Another process inserted first
                existing = await self._persistence.find_by_user_and_key(user_id, device_key)
                if existing is None:
                    raise PersistenceFailureError(
                        f"Device {device_key} for user {user_id} vanished after conflict"
                    ) from None
                return existing

    async def record_signal(
        self,
        user_id: str,
        device_key: str,
        signal: TrustSignal,
        device_name: str | None = None,
    ) -> DeviceTrustRecord:
        """Apply one login/trust signal and persist the recomputed trust."""
        _validate_key(user_id, device_key)
        attempts = self._config.engine.max_persist_attempts

        async with self._locks.hold((user_id, device_key)):
            for attempt in range(1, attempts + 1):
                existing = await self._persistence.find_by_user_and_key(user_id, device_key)
                is_new = existing is None
                record = existing or self._new_record(user_id, device_key, device_name)
                updated = self._apply_signal(record, signal, is_new)
                try:
                    if is_new:
                        saved = await self._persistence.create(updated)
                    else:
                        saved = await self._persistence.save(updated)
                except ConflictError:
                    logger.info(
                        "device_trust_conflict_retry",
                        user_id=user_id,
                        device_key=device_key,
                        attempt=attempt,
                    )
                    continue

                logger.info(
                    "device_trust_updated",
                    user_id=user_id,
                    device_key=device_key,
                    trust_score=saved.trust_score,
                    trust_level=saved.trust_level.value,
                    login_success=signal.login_success,
                    is_new_device=is_new,
                )
                return saved

        raise PersistenceFailureError(
            f"Could not persist trust signal for device {device_key} after {attempts} attempts"
        )

    async def set_manual_trust(
        self,
        user_id: str,
        device_key: str,
        level: DeviceTrustLevel | None,
    ) -> DeviceTrustRecord:
        """Pin a device as trusted or risky, or clear the pin with ``None``."""
        if level == DeviceTrustLevel.NEUTRAL:
            raise InvalidInputError("Manual trust must be 'trusted', 'risky' or cleared")
        attempts = self._config.engine.max_persist_attempts
        settings = self._config.trust

        async with self._locks.hold((user_id, device_key)):
            for _ in range(attempts):
                record = await self._persistence.find_by_user_and_key(user_id, device_key)
                if record is None:
                    raise NotFoundError(f"Device {device_key} not found for user {user_id}")

                updated = record.model_copy(deep=True)
                updated.manually_trusted = level == DeviceTrustLevel.TRUSTED
                updated.manually_risky = level == DeviceTrustLevel.RISKY
                updated.trust_score = apply_manual_overrides(updated.trust_score, updated, settings)
                updated.trust_level = classify_trust_level(updated.trust_score, settings)
                updated.updated_at = self._clock()
                try:
                    saved = await self._persistence.save(updated)
                except ConflictError:
                    continue

                logger.warning(
                    "device_trust_manually_set",
                    user_id=user_id,
                    device_key=device_key,
                    manual_level=level.value if level else None,
                    trust_score=saved.trust_score,
                )
                return saved

        raise PersistenceFailureError(
            f"Could not persist manual trust for device {device_key} after {attempts} attempts"
        )

    def _new_record(
        self, user_id: str, device_key: str, device_name: str | None
    ) -> DeviceTrustRecord:
        now = self._clock()
        default_score = self._config.trust.default_score
        return DeviceTrustRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            device_key=device_key,
            device_name=device_name,
            trust_score=default_score,
            trust_level=classify_trust_level(default_score, self._config.trust),
            created_at=now,
            updated_at=now,
        )

    def _apply_signal(
        self, record: DeviceTrustRecord, signal: TrustSignal, is_new: bool
    ) -> DeviceTrustRecord:
        now = self._clock()
        computation = compute_trust(record, signal, self._config.trust)

        updated = record.model_copy(deep=True)
        updated.trust_score = computation.score
        updated.trust_level = computation.trust_level
        updated.failed_login_count = computation.failed_login_count

        # Baseline only moves on a successful login
        if signal.login_success:
            geo = signal.geo
            updated.last_ip = signal.ip
            updated.user_agent = signal.user_agent
            updated.last_country = geo.country if geo else None
            updated.last_city = geo.city if geo else None
            updated.last_lat = geo.lat if geo else None
            updated.last_lng = geo.lng if geo else None
            updated.last_login_at = now

        updated.trust_signals = {
            **updated.trust_signals,
            "is_new_device": is_new,
            "last_computed_at": now.isoformat(),
            "drift_km": computation.drift_km,
        }
        updated.updated_at = now
        return updated


def _validate_key(user_id: str, device_key: str) -> None:
    if not user_id or not device_key:
        raise InvalidInputError("user_id and device_key are required")
