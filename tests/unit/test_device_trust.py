"""Unit tests for device trust scoring and the device trust store."""

import asyncio
from datetime import UTC, datetime

import pytest

from src.domains.risk.config import RiskConfig
from src.domains.risk.device_store import DeviceTrustStore
from src.domains.risk.errors import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    PersistenceFailureError,
)
from src.domains.risk.models import (
    DeviceTrustLevel,
    DeviceTrustRecord,
    GeoLocation,
    TrustSignal,
)
from src.domains.risk.trust import classify_trust_level, compute_trust, haversine

CONFIG = RiskConfig()
SETTINGS = CONFIG.trust
NOW = datetime(2026, 1, 15, 14, 0, 0, tzinfo=UTC)

PORT_AU_PRINCE = GeoLocation(country="HT", city="Port-au-Prince", lat=18.5944, lng=-72.3074)
CAP_HAITIEN = GeoLocation(country="HT", city="Cap-Haitien", lat=19.7578, lng=-72.2044)
MIAMI = GeoLocation(country="US", city="Miami", lat=25.7617, lng=-80.1918)


def _make_record(**kwargs) -> DeviceTrustRecord:
    defaults = {
        "id": "dev-1",
        "user_id": "user-1",
        "device_key": "device-abc",
        "trust_score": 50,
        "trust_level": DeviceTrustLevel.NEUTRAL,
        "last_ip": "10.0.0.1",
        "user_agent": "Mozilla/5.0",
        "last_lat": PORT_AU_PRINCE.lat,
        "last_lng": PORT_AU_PRINCE.lng,
        "created_at": NOW,
        "updated_at": NOW,
    }
    defaults.update(kwargs)
    return DeviceTrustRecord(**defaults)


def _signal(**kwargs) -> TrustSignal:
    defaults = {
        "ip": "10.0.0.1",
        "user_agent": "Mozilla/5.0",
        "geo": PORT_AU_PRINCE,
        "login_success": True,
    }
    defaults.update(kwargs)
    return TrustSignal(**defaults)


class TestHaversine:
    def test_same_point_zero(self):
        assert haversine(18.5, -72.3, 18.5, -72.3) == 0.0

    def test_port_au_prince_to_miami(self):
        distance = haversine(PORT_AU_PRINCE.lat, PORT_AU_PRINCE.lng, MIAMI.lat, MIAMI.lng)
        assert 1000 < distance < 1200


class TestClassifyTrustLevel:
    @pytest.mark.parametrize(
        ("score", "expected"),
        [
            (100, DeviceTrustLevel.TRUSTED),
            (70, DeviceTrustLevel.TRUSTED),
            (69, DeviceTrustLevel.NEUTRAL),
            (31, DeviceTrustLevel.NEUTRAL),
            (30, DeviceTrustLevel.RISKY),
            (0, DeviceTrustLevel.RISKY),
        ],
    )
    def test_boundaries(self, score, expected):
        assert classify_trust_level(score, SETTINGS) == expected


class TestComputeTrust:
    def test_successful_login_same_context(self):
        result = compute_trust(_make_record(failed_login_count=2), _signal(), SETTINGS)
        assert result.score == 52
        assert result.failed_login_count == 0
        assert result.drift_km == 0.0

    def test_failed_login(self):
        result = compute_trust(_make_record(), _signal(login_success=False), SETTINGS)
        assert result.score == 40
        assert result.failed_login_count == 1

    def test_ip_and_user_agent_change(self):
        result = compute_trust(
            _make_record(), _signal(ip="10.9.9.9", user_agent="curl/8.0"), SETTINGS
        )
        assert result.score == 50 + 2 - 5 - 3

    def test_missing_baseline_ip_is_not_a_change(self):
        result = compute_trust(_make_record(last_ip=None), _signal(ip="10.9.9.9"), SETTINGS)
        assert result.score == 52

    def test_near_drift(self):
        result = compute_trust(_make_record(), _signal(geo=CAP_HAITIEN), SETTINGS)
        assert 50 < result.drift_km <= 500
        assert result.score == 50 + 2 - 5

    def test_far_drift_only_far_penalty(self):
        result = compute_trust(_make_record(), _signal(geo=MIAMI), SETTINGS)
        assert result.drift_km > 500
        assert result.score == 50 + 2 - 15

    def test_no_geo_no_drift(self):
        result = compute_trust(_make_record(), _signal(geo=None), SETTINGS)
        assert result.drift_km is None

    def test_clamped_at_zero(self):
        result = compute_trust(
            _make_record(trust_score=3),
            _signal(login_success=False, ip="1.1.1.1", geo=MIAMI),
            SETTINGS,
        )
        assert result.score == 0
        assert result.trust_level == DeviceTrustLevel.RISKY

    def test_clamped_at_hundred(self):
        result = compute_trust(_make_record(trust_score=99), _signal(), SETTINGS)
        assert result.score == 100

    def test_manually_trusted_floor(self):
        result = compute_trust(
            _make_record(trust_score=85, manually_trusted=True),
            _signal(login_success=False, ip="1.1.1.1", geo=MIAMI),
            SETTINGS,
        )
        assert result.score == 80
        assert result.trust_level == DeviceTrustLevel.TRUSTED

    def test_manually_risky_ceiling(self):
        result = compute_trust(_make_record(trust_score=90, manually_risky=True), _signal(), SETTINGS)
        assert result.score == 30
        assert result.trust_level == DeviceTrustLevel.RISKY


class TestDeviceTrustStore:
    @pytest.mark.asyncio
    async def test_first_signal_creates_record(self, device_persistence, clock):
        store = DeviceTrustStore(device_persistence, CONFIG, clock=clock)
        record = await store.record_signal("user-1", "device-abc", _signal(), device_name="iPhone")

        assert record.version == 1
        assert record.trust_score == 52
        assert record.device_name == "iPhone"
        assert record.last_ip == "10.0.0.1"
        assert record.last_country == "HT"
        assert record.last_login_at == clock.now
        assert record.trust_signals["is_new_device"] is True
        assert record.trust_signals["last_computed_at"] == clock.now.isoformat()

    @pytest.mark.asyncio
    async def test_failed_login_keeps_baseline(self, device_persistence, clock):
        store = DeviceTrustStore(device_persistence, CONFIG, clock=clock)
        await store.record_signal("user-1", "device-abc", _signal())
        clock.advance(minutes=5)
        record = await store.record_signal(
            "user-1", "device-abc", _signal(login_success=False, ip="6.6.6.6", geo=MIAMI)
        )

        assert record.last_ip == "10.0.0.1"
        assert record.last_country == "HT"
        assert record.failed_login_count == 1
        assert record.trust_signals["is_new_device"] is False
        assert record.version == 2

    @pytest.mark.asyncio
    async def test_concurrent_signals_are_all_applied(self, device_persistence, clock):
        store = DeviceTrustStore(device_persistence, CONFIG, clock=clock)
        await store.record_signal("user-1", "device-abc", _signal())

        await asyncio.gather(
            *(
                store.record_signal("user-1", "device-abc", _signal(login_success=False))
                for _ in range(3)
            )
        )

        record = await store.get("user-1", "device-abc")
        assert record.failed_login_count == 3
        assert record.trust_score == 52 - 30
        assert record.version == 4

    @pytest.mark.asyncio
    async def test_retries_version_conflict(self, device_persistence, clock):
        store = DeviceTrustStore(device_persistence, CONFIG, clock=clock)
        await store.record_signal("user-1", "device-abc", _signal())

        original_save = device_persistence.save
        calls = 0

        async def flaky_save(record):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ConflictError("concurrent writer")
            return await original_save(record)

        device_persistence.save = flaky_save
        record = await store.record_signal("user-1", "device-abc", _signal())

        assert calls == 2
        assert record.trust_score == 54

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise(self, device_persistence, clock):
        store = DeviceTrustStore(device_persistence, CONFIG, clock=clock)
        await store.record_signal("user-1", "device-abc", _signal())

        async def always_conflict(record):
            raise ConflictError("concurrent writer")

        device_persistence.save = always_conflict
        with pytest.raises(PersistenceFailureError):
            await store.record_signal("user-1", "device-abc", _signal())

    @pytest.mark.asyncio
    async def test_get_or_create_is_idempotent(self, device_persistence, clock):
        store = DeviceTrustStore(device_persistence, CONFIG, clock=clock)
        first = await store.get_or_create("user-1", "device-abc")
        second = await store.get_or_create("user-1", "device-abc")

        assert first.id == second.id
        assert first.trust_score == 50
        assert first.trust_level == DeviceTrustLevel.NEUTRAL

    @pytest.mark.asyncio
    async def test_list_user_devices_most_recent_first(self, device_persistence, clock):
        store = DeviceTrustStore(device_persistence, CONFIG, clock=clock)
        await store.record_signal("user-1", "device-old", _signal())
        clock.advance(hours=1)
        await store.record_signal("user-1", "device-new", _signal())
        await store.record_signal("user-2", "device-other", _signal())

        devices = await store.list_user_devices("user-1")
        assert [d.device_key for d in devices] == ["device-new", "device-old"]

    @pytest.mark.asyncio
    async def test_set_manual_trust(self, device_persistence, clock):
        store = DeviceTrustStore(device_persistence, CONFIG, clock=clock)
        await store.record_signal("user-1", "device-abc", _signal())

        trusted = await store.set_manual_trust("user-1", "device-abc", DeviceTrustLevel.TRUSTED)
        assert trusted.manually_trusted is True
        assert trusted.manually_risky is False
        assert trusted.trust_score == 80
        assert trusted.trust_level == DeviceTrustLevel.TRUSTED

        risky = await store.set_manual_trust("user-1", "device-abc", DeviceTrustLevel.RISKY)
        assert risky.manually_trusted is False
        assert risky.manually_risky is True
        assert risky.trust_score == 30
        assert risky.trust_level == DeviceTrustLevel.RISKY

        cleared = await store.set_manual_trust("user-1", "device-abc", None)
        assert cleared.manually_trusted is False
        assert cleared.manually_risky is False
        assert cleared.trust_score == 30

    @pytest.mark.asyncio
    async def test_failed_logins_then_manual_risky_pin(self, device_persistence, clock):
        store = DeviceTrustStore(device_persistence, CONFIG, clock=clock)
        created = await store.get_or_create("user-1", "device-abc")
        assert created.trust_score == 50
        assert created.trust_level == DeviceTrustLevel.NEUTRAL

        for _ in range(3):
            clock.advance(minutes=1)
            record = await store.record_signal(
                "user-1", "device-abc", _signal(login_success=False)
            )
        assert record.failed_login_count == 3
        assert record.trust_score == 20

        await store.set_manual_trust("user-1", "device-abc", DeviceTrustLevel.RISKY)
        for _ in range(10):
            clock.advance(minutes=1)
            record = await store.record_signal("user-1", "device-abc", _signal())

        assert record.failed_login_count == 0
        assert record.trust_score <= SETTINGS.manual_risky_ceiling
        assert record.trust_level == DeviceTrustLevel.RISKY

    @pytest.mark.asyncio
    async def test_set_manual_trust_rejects_neutral(self, device_persistence):
        store = DeviceTrustStore(device_persistence, CONFIG)
        with pytest.raises(InvalidInputError):
            await store.set_manual_trust("user-1", "device-abc", DeviceTrustLevel.NEUTRAL)

    @pytest.mark.asyncio
    async def test_set_manual_trust_unknown_device(self, device_persistence):
        store = DeviceTrustStore(device_persistence, CONFIG)
        with pytest.raises(NotFoundError):
            await store.set_manual_trust("user-1", "missing", DeviceTrustLevel.TRUSTED)

    @pytest.mark.asyncio
    async def test_blank_key_rejected(self, device_persistence):
        store = DeviceTrustStore(device_persistence, CONFIG)
        with pytest.raises(InvalidInputError):
            await store.record_signal("user-1", "", _signal())
