from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from satellite_node.services.hub import HubClient, RegistrationError, RegistrationResult
from satellite_node.services.registration import (
    REGISTRATION_LOCK_KEY,
    REGISTRATION_STATE_KEY,
    RegistrationService,
    RegistrationState,
    build_descriptor,
    descriptor_hash,
)
from tests.conftest import make_settings


class WallClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def wall_clock():
    return WallClock()


@pytest.fixture
def mock_hub(hub_config):
    hub = AsyncMock(spec=HubClient)
    hub.config = hub_config
    hub.register.return_value = RegistrationResult("sat-42", "registered", {})
    return hub


@pytest.fixture
def service(settings, mock_hub, store, wall_clock):
    return RegistrationService(settings, mock_hub, store, clock=wall_clock)


def test_should_register_without_previous_registration(service):
    assert service.should_register()


def test_state_staleness_boundary():
    registered = datetime(2024, 5, 1, tzinfo=timezone.utc)
    state = RegistrationState(last_registered_at=registered)

    assert not state.should_register(registered + timedelta(hours=23, minutes=59))
    assert state.should_register(registered + timedelta(hours=24))
    assert state.should_register(registered, force=True)


@pytest.mark.asyncio
async def test_register_persists_state(service, store, wall_clock, settings):
    result = await service.register_satellite()

    assert result.satellite_id == "sat-42"
    state = service.state()
    assert state.last_registered_at == wall_clock.now
    assert state.satellite_id == "sat-42"
    assert state.payload_hash == descriptor_hash(build_descriptor(settings))
    assert store.get_json(REGISTRATION_STATE_KEY)["status"] == "registered"


@pytest.mark.asyncio
async def test_second_registration_within_24h_makes_no_call(service, mock_hub, wall_clock):
    await service.register_satellite()
    wall_clock.now += timedelta(hours=23)

    assert await service.register_satellite() is None
    mock_hub.register.assert_awaited_once()


@pytest.mark.asyncio
async def test_force_and_staleness_trigger_new_registration(service, mock_hub, wall_clock):
    await service.register_satellite()
    await service.register_satellite(force=True)
    assert mock_hub.register.await_count == 2

    wall_clock.now += timedelta(hours=24)
    await service.register_satellite()
    assert mock_hub.register.await_count == 3


@pytest.mark.asyncio
async def test_failure_propagates_and_releases_lock(service, mock_hub, store):
    mock_hub.register.side_effect = RegistrationError("hub down")

    with pytest.raises(RegistrationError):
        await service.register_satellite()

    assert store.get(REGISTRATION_LOCK_KEY) is None
    assert service.state().last_registered_at is None


@pytest.mark.asyncio
async def test_concurrent_registration_is_single_flight(service, mock_hub, store):
    store.add(REGISTRATION_LOCK_KEY, "1", ttl=60)

    assert await service.register_satellite() is None
    mock_hub.register.assert_not_awaited()


@pytest.mark.asyncio
async def test_auto_register_logs_and_swallows_failures(service, mock_hub, caplog):
    mock_hub.register.side_effect = RegistrationError("hub down")

    await service.auto_register()

    assert "Automatic satellite registration failed" in caplog.text


def test_descriptor_advertises_type_capabilities():
    descriptor = build_descriptor(make_settings(satellite_type="pixel", api_prefix="api/sat/"))

    assert "qr_generation" in descriptor["capabilities"]
    assert "health_monitoring" in descriptor["capabilities"]
    assert descriptor["health_endpoint"] == "https://satellite.example.com/api/sat/health"


def test_state_record_round_trip_tolerates_bad_timestamp():
    assert RegistrationState.from_record({"last_registered_at": "yesterday"}).last_registered_at is None
    assert RegistrationState.from_record(None) == RegistrationState()


@pytest.mark.asyncio
async def test_state_written_while_waiting_for_lock_skips_second_call(
    service, mock_hub, store, wall_clock, mocker
):
    # Another process registers between the staleness check and taking the lock
    fresh = RegistrationState(last_registered_at=wall_clock.now, satellite_id="sat-7")
    real_add = store.add

    def add_after_other_process(key, value, *, ttl=None):
        store.set_json(REGISTRATION_STATE_KEY, fresh.to_record())
        return real_add(key, value, ttl=ttl)

    mocker.patch.object(store, "add", side_effect=add_after_other_process)

    assert await service.register_satellite() is None
    mock_hub.register.assert_not_awaited()
    assert store.get(REGISTRATION_LOCK_KEY) is None
    assert service.state().satellite_id == "sat-7"


@pytest.mark.asyncio
async def test_lock_taken_over_after_expiry_is_left_alone(service, mock_hub, store):
    async def register_slowly(descriptor):
        store.delete(REGISTRATION_LOCK_KEY)
        store.add(REGISTRATION_LOCK_KEY, "other-process", ttl=60)
        return RegistrationResult("sat-42", "registered", {})

    mock_hub.register.side_effect = register_slowly

    await service.register_satellite()

    assert store.get(REGISTRATION_LOCK_KEY) == "other-process"
