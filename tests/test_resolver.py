import pytest

from models import ResolutionError
from resolver import resolve, resolve_target


@pytest.mark.asyncio
async def test_ip_literal_passes_through():
    target = await resolve_target("10.0.0.1")
    assert target.ip == "10.0.0.1"
    assert target.display == "10.0.0.1"


@pytest.mark.asyncio
async def test_url_target_keeps_original():
    target = await resolve_target("http://127.0.0.1/admin")
    assert target.ip == "127.0.0.1"
    assert target.original == "http://127.0.0.1/admin"


@pytest.mark.asyncio
async def test_localhost_resolves():
    ips = await resolve("localhost")
    assert ips
    assert len(ips) == len(set(ips))
    assert set(ips) & {"127.0.0.1", "::1"}


@pytest.mark.asyncio
async def test_unresolvable_host_raises():
    with pytest.raises(ResolutionError):
        await resolve_target("no-such-host.invalid")


@pytest.mark.asyncio
async def test_empty_target_raises():
    with pytest.raises(ResolutionError):
        await resolve_target("   ")
