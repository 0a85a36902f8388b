"""Shared fixtures for the service-layer test suite."""

from __future__ import annotations

import pytest

from feedersync.security.device_auth import (
    EnforcingDeviceAuthenticator,
    PermissiveDeviceAuthenticator,
)
from feedersync.security.device_secrets import SecretEnvelope, SecretHasher
from feedersync.services.poll import PollService
from feedersync.services.rate_limiter import PollRateLimiter
from feedersync.services.tests.fakes import (
    TEST_DEVICE_ID,
    TEST_DEVICE_SECRET,
    TEST_MASTER_KEY,
    FixedClock,
    InMemoryNonceRegistry,
    InMemoryStore,
)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def envelope() -> SecretEnvelope:
    return SecretEnvelope(TEST_MASTER_KEY)


@pytest.fixture
def hasher() -> SecretHasher:
    return SecretHasher()


@pytest.fixture
def nonces() -> InMemoryNonceRegistry:
    return InMemoryNonceRegistry()


@pytest.fixture
def store(envelope: SecretEnvelope, hasher: SecretHasher) -> InMemoryStore:
    """Store seeded with ``feeder-001`` and two profiles, "Normal" active."""
    s = InMemoryStore()
    s.add_device(
        TEST_DEVICE_ID,
        hasher.hash(TEST_DEVICE_SECRET),
        envelope.encrypt(TEST_DEVICE_SECRET),
    )
    normal = s.add_profile(TEST_DEVICE_ID, "Normal", 1200)
    s.add_profile(TEST_DEVICE_ID, "Diet", 800)
    s.add_schedule(TEST_DEVICE_ID, "Normal", 8, 0, 1200)
    s.add_schedule(TEST_DEVICE_ID, "Normal", 19, 30, 1000)
    s.activate(TEST_DEVICE_ID, normal)
    return s


@pytest.fixture
def permissive_service(
    store: InMemoryStore, envelope: SecretEnvelope, clock: FixedClock
) -> PollService:
    return PollService(
        store=store,
        authenticator=PermissiveDeviceAuthenticator(),
        envelope=envelope,
        rate_limiter=PollRateLimiter(120, clock=clock),
        poll_interval_sec=60,
        clock=clock,
    )


@pytest.fixture
def enforcing_service(
    store: InMemoryStore,
    envelope: SecretEnvelope,
    nonces: InMemoryNonceRegistry,
    clock: FixedClock,
) -> PollService:
    return PollService(
        store=store,
        authenticator=EnforcingDeviceAuthenticator(nonces, 300, clock=clock),
        envelope=envelope,
        rate_limiter=PollRateLimiter(120, clock=clock),
        poll_interval_sec=60,
        clock=clock,
    )
