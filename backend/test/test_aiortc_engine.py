import logging
import os

import pytest
from aiortc import RTCIceCandidate

from relay.config import DEFAULT_MEDIA_CODECS
from relay.engine import MediaEngineError, create_worker
from relay.engine.aiortc_engine import (
    AiortcRouter,
    _candidate_from_dict,
    configure_engine_logging,
    filter_candidates,
    to_receive_parameters,
    to_send_parameters,
)
from relay.engine import rtp

from fakes import video_rtp_parameters


def _candidate(ip: str, port: int = 50000, protocol: str = "udp") -> RTCIceCandidate:
    return RTCIceCandidate(
        component=1,
        foundation="abc",
        ip=ip,
        port=port,
        priority=2130706431,
        protocol=protocol,
        type="host",
    )


@pytest.mark.anyio
async def test_create_worker_rejects_bad_settings() -> None:
    with pytest.raises(MediaEngineError):
        await create_worker(log_level="verbose")
    with pytest.raises(MediaEngineError):
        await create_worker(rtc_min_port=20000, rtc_max_port=10000)
    with pytest.raises(MediaEngineError):
        await create_worker(rtc_min_port=0, rtc_max_port=100)


@pytest.mark.anyio
async def test_create_worker_runs_in_process() -> None:
    worker = await create_worker("warn", ("ice",), 10000, 10100)

    assert worker.pid == os.getpid()
    assert (worker.rtc_min_port, worker.rtc_max_port) == (10000, 10100)
    worker.close()


@pytest.mark.anyio
async def test_router_accepts_supported_codecs() -> None:
    worker = await create_worker()
    router = await worker.create_router(list(DEFAULT_MEDIA_CODECS))

    assert isinstance(router, AiortcRouter)
    assert [c["mimeType"] for c in router.rtp_capabilities["codecs"] if not rtp.is_rtx_codec(c)] == [
        "audio/opus", "video/VP8", "video/H264",
    ]
    worker.close()
    assert router.closed


@pytest.mark.anyio
async def test_router_rejects_codec_unknown_to_aiortc() -> None:
    worker = await create_worker()
    with pytest.raises(MediaEngineError):
        await worker.create_router([{"kind": "video", "mimeType": "video/x-relay-test", "clockRate": 90000}])
    worker.close()


def test_engine_log_tags_raise_only_tagged_loggers() -> None:
    configure_engine_logging("debug", ["ice"])

    assert logging.getLogger("aioice").level == logging.DEBUG
    assert logging.getLogger("aiortc").level == logging.WARNING

    configure_engine_logging("warn", [])
    assert logging.getLogger("aioice").level == logging.WARNING


def test_filter_candidates_matches_listen_ips_and_announces() -> None:
    candidates = [_candidate("127.0.0.1"), _candidate("192.168.0.5", 50001)]

    result = filter_candidates(candidates, [{"ip": "127.0.0.1", "announcedIp": "203.0.113.10"}], True)
    assert [(c["ip"], c["port"]) for c in result] == [("203.0.113.10", 50000)]

    wildcard = filter_candidates(candidates, [{"ip": "0.0.0.0", "announcedIp": None}], True)
    assert [c["ip"] for c in wildcard] == ["127.0.0.1", "192.168.0.5"]

    assert filter_candidates(candidates, [{"ip": "0.0.0.0"}], False) == []


def test_remote_candidate_from_sdp_and_fields() -> None:
    from_sdp = _candidate_from_dict({"candidate": "candidate:1 1 udp 2130706431 192.168.1.2 50000 typ host"})
    assert (from_sdp.ip, from_sdp.port, from_sdp.type) == ("192.168.1.2", 50000, "host")

    from_fields = _candidate_from_dict({
        "foundation": 7, "address": "10.0.0.2", "port": "40000", "priority": 1, "protocol": "UDP",
    })
    assert (from_fields.foundation, from_fields.ip, from_fields.port, from_fields.protocol) == (
        "7", "10.0.0.2", 40000, "udp",
    )


def test_receive_parameters_take_first_encoding() -> None:
    params = to_receive_parameters(video_rtp_parameters(encodings=3))

    assert [c.payloadType for c in params.codecs] == [96, 97]
    assert len(params.encodings) == 1
    assert params.encodings[0].ssrc == 11110000
    assert params.encodings[0].payloadType == 96
    assert params.encodings[0].rtx.ssrc == 11110001
    assert params.muxId == "0"
    assert params.rtcp.cname == "client-a"


def test_send_parameters_carry_consumer_ssrc() -> None:
    consumer_params = rtp.get_consumer_rtp_parameters(
        video_rtp_parameters(), rtp.generate_router_rtp_capabilities(DEFAULT_MEDIA_CODECS), ssrc=4242,
    )

    params = to_send_parameters(consumer_params)

    assert params.rtcp.ssrc == 4242
    assert [c.mimeType for c in params.codecs] == ["video/VP8", "video/rtx"]
    assert params.codecs[1].parameters == {"apt": 101}
