"""Property-based tests for port allocation."""

import pytest
from hypothesis import given, strategies as st, settings, HealthCheck

from eliza_orchestrator.managers import SERVICE_PORTS, PortAllocator
from eliza_orchestrator.utils.exceptions import PortUnavailableError

services = st.sampled_from(sorted(SERVICE_PORTS))
occupied = st.sets(st.integers(min_value=5400, max_value=11500), max_size=40)


@pytest.mark.property
@given(services, occupied)
@settings(suppress_health_check=[HealthCheck.function_scoped_fixture], max_examples=200)
def test_allocated_port_is_a_free_candidate(service: str, taken: set):
    """Property: The chosen port is free and is the default, fallback or in range."""
    allocation = SERVICE_PORTS[service]
    allocator = PortAllocator(probe=lambda port: port not in taken)

    try:
        port = allocator.allocate(service)
    except PortUnavailableError:
        candidates = allocation.candidates(allocation.default)
        assert all(port in taken for port in candidates)
        return

    assert port not in taken
    assert (
        port in (allocation.default, allocation.fallback)
        or allocation.range_start <= port < allocation.range_end
    )


@pytest.mark.property
@given(services, occupied)
@settings(max_examples=200)
def test_first_free_candidate_wins(service: str, taken: set):
    """Property: No earlier candidate was free when a later one is chosen."""
    allocation = SERVICE_PORTS[service]
    candidates = allocation.candidates(allocation.default)
    free = [port for port in candidates if port not in taken]

    allocator = PortAllocator(probe=lambda port: port not in taken)
    if not free:
        with pytest.raises(PortUnavailableError):
            allocator.allocate(service)
    else:
        assert allocator.allocate(service) == free[0]
        assert allocator.allocated(service) == free[0]


@pytest.mark.property
@given(services, st.integers(min_value=1024, max_value=65535))
@settings(max_examples=100)
def test_free_preferred_port_is_used(service: str, preferred: int):
    """Property: A free preferred port is always returned as is."""
    allocator = PortAllocator(probe=lambda port: True)

    assert allocator.allocate(service, preferred=preferred) == preferred
