import asyncio

import pytest

from vaultp2p.errors import SessionClosedError, TransportTimeoutError
from vaultp2p.loopback import LoopbackNetwork
from vaultp2p.negotiator import SWITCHING_LABEL, DialState, TransportNegotiator
from vaultp2p.transport import LinkState


async def _pair(network: LoopbackNetwork):
    target = network.endpoint()
    await target.register("target01")
    target.set_incoming_callback(lambda link: None)
    dialer = network.endpoint()
    await dialer.register("dialer01")
    return dialer, target


@pytest.mark.asyncio
async def test_direct_path_opens_first_try() -> None:
    network = LoopbackNetwork()
    dialer, _ = await _pair(network)
    switched = []
    neg = TransportNegotiator(
        dialer, direct_timeout_s=0.2, total_timeout_s=0.5, on_switching=switched.append
    )

    opened = []
    outcome = await neg.dial("target01", on_open=opened.append)
    assert outcome.state == DialState.OPEN
    assert outcome.attempts == 1
    assert not outcome.relayed
    assert opened == [outcome.link]
    assert switched == []
    assert network.dials == [("dialer01", "target01", False)]


@pytest.mark.asyncio
async def test_stalled_direct_path_falls_back_to_relay_once() -> None:
    network = LoopbackNetwork()
    network.block_direct = True
    dialer, _ = await _pair(network)
    switched = []
    neg = TransportNegotiator(
        dialer, direct_timeout_s=0.05, total_timeout_s=0.5, on_switching=switched.append
    )

    outcome = await neg.dial("target01")
    assert outcome.relayed
    assert outcome.attempts == 2
    assert outcome.link.is_open
    assert switched == [SWITCHING_LABEL]
    assert network.dials == [
        ("dialer01", "target01", False),
        ("dialer01", "target01", True),
    ]

    abandoned = dialer.links[0]
    assert abandoned.state == LinkState.CLOSED
    assert abandoned._open_cb is None


@pytest.mark.asyncio
async def test_no_path_at_all_is_a_single_timeout() -> None:
    network = LoopbackNetwork()
    network.block_direct = True
    network.block_relay = True
    dialer, _ = await _pair(network)
    neg = TransportNegotiator(dialer, direct_timeout_s=0.05, total_timeout_s=0.15)

    with pytest.raises(TransportTimeoutError):
        await neg.dial("target01")
    assert neg.state == DialState.TIMEOUT
    assert len(network.dials) == 2
    assert all(link.is_finished for link in dialer.links)


@pytest.mark.asyncio
async def test_early_failure_switches_without_waiting() -> None:
    network = LoopbackNetwork()
    dialer, _ = await _pair(network)
    neg = TransportNegotiator(dialer, direct_timeout_s=5.0, total_timeout_s=5.0)

    with pytest.raises(TransportTimeoutError):
        await neg.dial("missing0")
    assert [d[2] for d in network.dials] == [False, True]


@pytest.mark.asyncio
async def test_cancel_wakes_a_pending_dial() -> None:
    network = LoopbackNetwork()
    network.block_direct = True
    network.block_relay = True
    dialer, _ = await _pair(network)
    switched = []
    neg = TransportNegotiator(
        dialer, direct_timeout_s=5.0, total_timeout_s=10.0, on_switching=switched.append
    )

    dialing = asyncio.ensure_future(neg.dial("target01"))
    await asyncio.sleep(0.01)
    neg.cancel()

    with pytest.raises(SessionClosedError):
        await asyncio.wait_for(dialing, 1.0)
    assert switched == []
    assert len(network.dials) == 1
    assert neg.state == DialState.IDLE

    with pytest.raises(SessionClosedError):
        await neg.dial("target01")
    assert len(network.dials) == 1
