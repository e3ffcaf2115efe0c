"""aiortc 기반 미디어 엔진 바인딩.

aiortc의 ORTC 프리미티브로 Worker/Router/Transport/Producer/Consumer 계약을
구현합니다. 코덱 처리, ICE, DTLS, RTP 송수신은 모두 aiortc가 담당하고
이 모듈은 객체 수명주기와 파라미터 변환만 수행합니다.

Architecture:
    - WebRtcTransport: RTCIceGatherer → RTCIceTransport → RTCDtlsTransport
    - Producer: RTCRtpReceiver (클라이언트 → 서버)
    - Consumer: MediaRelay.subscribe(producer track) → RTCRtpSender (서버 → 클라이언트)

Limitations:
    - aiortc는 full ICE 에이전트이므로 connect 시 원격 iceParameters가 필요함
    - TCP 후보는 수집되지 않음 (enable_tcp는 기록만 함)
    - simulcast producer는 첫 번째 인코딩만 수신함
    - RTC 포트 범위는 검증/로그만 하며 aiortc가 임시 포트를 선택함

See Also:
    aiortc Documentation: https://aiortc.readthedocs.io/
"""

import asyncio
import logging
import os
import uuid
from typing import Any, Dict, Iterable, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCCertificate,
    RTCDtlsFingerprint,
    RTCDtlsParameters,
    RTCDtlsTransport,
    RTCIceCandidate,
    RTCIceGatherer,
    RTCIceParameters,
    RTCIceTransport,
    RTCRtpReceiver,
    RTCRtpSender,
)
from aiortc.codecs import get_capabilities
from aiortc.contrib.media import MediaRelay
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.rtcrtpparameters import (
    RTCRtcpFeedback,
    RTCRtcpParameters,
    RTCRtpCodecParameters,
    RTCRtpDecodingParameters,
    RTCRtpHeaderExtensionParameters,
    RTCRtpReceiveParameters,
    RTCRtpRtxParameters,
    RTCRtpSendParameters,
)
from aiortc.sdp import candidate_from_sdp

from . import rtp
from .base import Consumer, MediaEngineError, Producer, Router, WebRtcTransport, Worker

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "none": logging.CRITICAL + 10,
}

# 로그 태그 → 해당 태그의 로그를 내는 라이브러리 로거
LOG_TAG_LOGGERS = {
    "info": ("aiortc",),
    "ice": ("aioice",),
    "dtls": ("aiortc.rtcdtlstransport",),
    "srtp": ("aiortc.rtcdtlstransport",),
    "rtp": ("aiortc.rtcrtpreceiver", "aiortc.rtcrtpsender"),
    "rtcp": ("aiortc.rtcrtpreceiver", "aiortc.rtcrtpsender"),
}


def configure_engine_logging(log_level: str, log_tags: Iterable[str]) -> None:
    """엔진 라이브러리 로거의 레벨을 설정합니다.

    태그가 지정된 로거만 log_level을 따르고, 나머지 엔진 로거는 WARNING 이상만 출력합니다.
    """
    level = LOG_LEVELS[log_level]
    for name in ("aiortc", "aioice"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    for tag in log_tags:
        for name in LOG_TAG_LOGGERS.get(tag, ()):
            logging.getLogger(name).setLevel(level)


async def create_worker(
    log_level: str = "warn",
    log_tags: Iterable[str] = (),
    rtc_min_port: int = 10000,
    rtc_max_port: int = 59999,
) -> "AiortcWorker":
    """aiortc 워커를 생성합니다.

    Args:
        log_level: "debug" | "warn" | "error" | "none"
        log_tags: 상세 로그를 켤 태그 목록 (ice, dtls, rtp, srtp, rtcp, info)
        rtc_min_port: RTC 포트 범위 하한
        rtc_max_port: RTC 포트 범위 상한

    Returns:
        AiortcWorker: 생성된 워커

    Raises:
        MediaEngineError: 잘못된 로그 레벨 또는 포트 범위
    """
    if log_level not in LOG_LEVELS:
        raise MediaEngineError(f"invalid log_level: {log_level!r}")
    if not 0 < rtc_min_port <= rtc_max_port <= 65535:
        raise MediaEngineError(f"invalid RTC port range: {rtc_min_port}-{rtc_max_port}")

    log_tags = tuple(log_tags)
    configure_engine_logging(log_level, log_tags)
    worker = AiortcWorker(rtc_min_port, rtc_max_port)
    logger.info(
        f"[MediaEngine] 워커 생성 [pid:{worker.pid}] level={log_level}, "
        f"tags={','.join(log_tags)}, ports={rtc_min_port}-{rtc_max_port}"
    )
    return worker


def _candidate_to_dict(candidate: RTCIceCandidate, ip: str) -> Dict[str, Any]:
    return {
        "foundation": candidate.foundation,
        "priority": candidate.priority,
        "ip": ip,
        "address": ip,
        "protocol": candidate.protocol,
        "port": candidate.port,
        "type": candidate.type,
    }


def _candidate_from_dict(data: Dict[str, Any]) -> RTCIceCandidate:
    sdp = data.get("candidate")
    if isinstance(sdp, str):
        if sdp.startswith("candidate:"):
            sdp = sdp[10:]
        return candidate_from_sdp(sdp)
    return RTCIceCandidate(
        component=data.get("component", 1),
        foundation=str(data["foundation"]),
        ip=data.get("ip") or data["address"],
        port=int(data["port"]),
        priority=int(data["priority"]),
        protocol=str(data.get("protocol", "udp")).lower(),
        type=data.get("type", "host"),
    )


def filter_candidates(
    candidates: List[RTCIceCandidate],
    listen_ips: List[Dict[str, Any]],
    enable_udp: bool,
) -> List[Dict[str, Any]]:
    """수집된 로컬 후보를 listen_ips 기준으로 거르고 announcedIp로 바꿉니다.

    ip가 0.0.0.0 / :: 인 listen_ip는 모든 로컬 주소와 일치합니다.
    """
    result = []
    for candidate in candidates:
        if candidate.protocol.lower() == "udp" and not enable_udp:
            continue
        for listen_ip in listen_ips:
            ip = listen_ip.get("ip")
            if ip in ("0.0.0.0", "::") or ip == candidate.ip:
                result.append(_candidate_to_dict(candidate, listen_ip.get("announcedIp") or candidate.ip))
                break
    return result


def _codec_parameters(codec: Dict[str, Any]) -> RTCRtpCodecParameters:
    return RTCRtpCodecParameters(
        mimeType=codec["mimeType"],
        clockRate=codec["clockRate"],
        channels=codec.get("channels"),
        payloadType=codec["payloadType"],
        rtcpFeedback=[
            RTCRtcpFeedback(type=fb["type"], parameter=fb.get("parameter") or None)
            for fb in codec.get("rtcpFeedback") or []
        ],
        parameters=dict(codec.get("parameters") or {}),
    )


def _header_extensions(rtp_parameters: Dict[str, Any]) -> List[RTCRtpHeaderExtensionParameters]:
    return [
        RTCRtpHeaderExtensionParameters(id=ext["id"], uri=ext["uri"])
        for ext in rtp_parameters.get("headerExtensions") or []
    ]


def _media_payload_type(rtp_parameters: Dict[str, Any]) -> int:
    return next(
        codec["payloadType"] for codec in rtp_parameters["codecs"] if not rtp.is_rtx_codec(codec)
    )


def to_receive_parameters(rtp_parameters: Dict[str, Any]) -> RTCRtpReceiveParameters:
    """producer rtpParameters(dict)를 aiortc 수신 파라미터로 변환합니다."""
    rtcp = rtp_parameters.get("rtcp") or {}
    parameters = RTCRtpReceiveParameters(
        codecs=[_codec_parameters(codec) for codec in rtp_parameters["codecs"]],
        headerExtensions=_header_extensions(rtp_parameters),
        muxId=rtp_parameters.get("mid") or "",
        rtcp=RTCRtcpParameters(cname=rtcp.get("cname"), mux=True),
    )

    payload_type = _media_payload_type(rtp_parameters)
    encodings = [
        encoding for encoding in rtp_parameters.get("encodings") or [] if encoding.get("ssrc")
    ]
    # simulcast는 첫 번째 인코딩만 수신
    parameters.encodings = [
        RTCRtpDecodingParameters(
            ssrc=encoding["ssrc"],
            payloadType=payload_type,
            rtx=RTCRtpRtxParameters(ssrc=encoding["rtx"]["ssrc"]) if encoding.get("rtx") else None,
        )
        for encoding in encodings[:1]
    ]
    return parameters


def to_send_parameters(rtp_parameters: Dict[str, Any]) -> RTCRtpSendParameters:
    """consumer rtpParameters(dict)를 aiortc 송신 파라미터로 변환합니다."""
    rtcp = rtp_parameters.get("rtcp") or {}
    ssrc = rtp_parameters["encodings"][0]["ssrc"]
    return RTCRtpSendParameters(
        codecs=[_codec_parameters(codec) for codec in rtp_parameters["codecs"]],
        headerExtensions=_header_extensions(rtp_parameters),
        muxId=rtp_parameters.get("mid") or "",
        rtcp=RTCRtcpParameters(cname=rtcp.get("cname"), mux=True, ssrc=ssrc),
    )


async def _stop_quietly(label: str, coro) -> None:
    try:
        await coro
    except Exception as e:  # pragma: no cover - cleanup best effort
        logger.debug(f"[MediaEngine] {label} 정리 중 오류: {e}")


class AiortcProducer(Producer):
    """RTCRtpReceiver 기반 producer."""

    def __init__(self, transport: "AiortcWebRtcTransport", kind: str, rtp_parameters: Dict[str, Any], receiver: RTCRtpReceiver):
        super().__init__(str(uuid.uuid4()), kind, rtp_parameters)
        self._transport = transport
        self.receiver = receiver

    @property
    def track(self) -> MediaStreamTrack:
        return self.receiver.track

    def _on_close(self) -> None:
        self._transport.spawn(_stop_quietly("receiver", self.receiver.stop()), f"producer-close-{self.id}")


class AiortcConsumer(Consumer):
    """RTCRtpSender 기반 consumer.

    transport가 연결되고 consumer가 일시정지 상태가 아닐 때 송신을 시작합니다.
    """

    def __init__(
        self,
        transport: "AiortcWebRtcTransport",
        producer: Producer,
        rtp_parameters: Dict[str, Any],
        consumer_type: str,
        paused: bool,
        sender: RTCRtpSender,
    ):
        super().__init__(str(uuid.uuid4()), producer, rtp_parameters, consumer_type, paused)
        self._transport = transport
        self.sender = sender
        self._send_task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._send_task is None and not self.closed:
            self._send_task = self._transport.spawn(self._run_sender(), f"consumer-send-{self.id}")

    async def _run_sender(self) -> None:
        await self._transport.wait_connected()
        try:
            await self.sender.send(to_send_parameters(self.rtp_parameters))
        except (InvalidAccessError, InvalidStateError) as e:
            if self.closed:
                return
            raise MediaEngineError(f"consumer {self.id} send failed: {e}") from e
        logger.info(f"[MediaEngine] consumer {self.id[:8]} 송신 시작 ({self.kind})")

    async def _resume(self) -> None:
        self.start()

    def _on_close(self) -> None:
        if self._send_task is not None:
            self._send_task.cancel()
        self._transport.spawn(_stop_quietly("sender", self.sender.stop()), f"consumer-close-{self.id}")


class AiortcWebRtcTransport(WebRtcTransport):
    """aiortc ICE/DTLS transport 묶음."""

    def __init__(
        self,
        router: "AiortcRouter",
        gatherer: RTCIceGatherer,
        ice_transport: RTCIceTransport,
        dtls_transport: RTCDtlsTransport,
        ice_candidates: List[Dict[str, Any]],
        initial_available_outgoing_bitrate: Optional[int],
    ):
        local_ice = gatherer.getLocalParameters()
        local_dtls = dtls_transport.getLocalParameters()
        super().__init__(
            router,
            str(uuid.uuid4()),
            ice_parameters={
                "usernameFragment": local_ice.usernameFragment,
                "password": local_ice.password,
                "iceLite": False,
            },
            ice_candidates=ice_candidates,
            dtls_parameters={
                "role": "auto",
                "fingerprints": [
                    {"algorithm": fp.algorithm, "value": fp.value}
                    for fp in local_dtls.fingerprints
                ],
            },
        )
        self._ice_transport = ice_transport
        self._dtls_transport = dtls_transport
        self._connected = asyncio.Event()
        self.initial_available_outgoing_bitrate = initial_available_outgoing_bitrate
        self.max_incoming_bitrate: Optional[int] = None

    def spawn(self, coro, name: str) -> asyncio.Task:
        return self.router.worker.spawn(coro, name)

    async def wait_connected(self) -> None:
        await self._connected.wait()

    async def set_max_incoming_bitrate(self, bitrate: int) -> None:
        # aiortc는 수신 비트레이트 상한 API가 없으므로 값만 기록
        if bitrate <= 0:
            raise MediaEngineError(f"invalid bitrate: {bitrate}")
        self.max_incoming_bitrate = bitrate
        logger.debug(f"[MediaEngine] transport {self.id[:8]} max incoming bitrate={bitrate} (기록만 함)")

    async def _connect(
        self,
        dtls_parameters: Dict[str, Any],
        ice_parameters: Optional[Dict[str, Any]],
        ice_candidates: Optional[List[Dict[str, Any]]],
    ) -> None:
        if not ice_parameters:
            raise MediaEngineError("aiortc transport requires remote iceParameters to connect")

        try:
            remote_ice = RTCIceParameters(
                usernameFragment=ice_parameters["usernameFragment"],
                password=ice_parameters["password"],
                iceLite=bool(ice_parameters.get("iceLite", False)),
            )
            remote_dtls = RTCDtlsParameters(
                fingerprints=[
                    RTCDtlsFingerprint(algorithm=fp["algorithm"], value=fp["value"])
                    for fp in dtls_parameters["fingerprints"]
                ],
                role=dtls_parameters.get("role", "auto"),
            )
            candidates = [_candidate_from_dict(c) for c in ice_candidates or []]
        except (KeyError, TypeError, ValueError) as e:
            raise MediaEngineError(f"malformed connect parameters: {e}") from e

        # aiortc는 ICE controlling 측이 DTLS server가 됨
        self._ice_transport._connection.ice_controlling = remote_dtls.role == "client"
        for candidate in candidates:
            await self._ice_transport.addRemoteCandidate(candidate)

        self.spawn(self._run_handshake(remote_ice, remote_dtls), f"transport-connect-{self.id}")

    async def _run_handshake(self, remote_ice: RTCIceParameters, remote_dtls: RTCDtlsParameters) -> None:
        try:
            await self._ice_transport.start(remote_ice)
            await self._dtls_transport.start(remote_dtls)
        except (ConnectionError, InvalidStateError) as e:
            if self.closed:
                return
            self.dtls_state = "failed"
            self.emit("dtlsstatechange", "failed")
            raise MediaEngineError(f"transport {self.id} handshake failed: {e}") from e
        if self.closed:
            return
        self.dtls_state = "connected"
        self._connected.set()
        logger.info(f"[MediaEngine] transport {self.id[:8]} ICE/DTLS 연결 완료")
        self.emit("dtlsstatechange", "connected")

    async def _produce(self, kind: str, rtp_parameters: Dict[str, Any]) -> Producer:
        try:
            receive_parameters = to_receive_parameters(rtp_parameters)
        except (KeyError, StopIteration) as e:
            raise MediaEngineError(f"malformed rtpParameters: {e!r}") from e
        receiver = RTCRtpReceiver(kind, self._dtls_transport)
        await receiver.receive(receive_parameters)
        return AiortcProducer(self, kind, rtp_parameters, receiver)

    async def _consume(
        self,
        producer: Producer,
        rtp_parameters: Dict[str, Any],
        consumer_type: str,
        paused: bool,
    ) -> Consumer:
        if not isinstance(producer, AiortcProducer):
            raise MediaEngineError(f"producer {producer.id} does not belong to this engine")

        track = self.router.relay.subscribe(producer.track)
        sender = RTCRtpSender(track, self._dtls_transport)

        # 실제 송신 SSRC는 sender가 정하므로 광고할 파라미터를 맞춰준다
        encoding: Dict[str, Any] = {"ssrc": sender._ssrc}
        if any(rtp.is_rtx_codec(codec) for codec in rtp_parameters["codecs"]):
            encoding["rtx"] = {"ssrc": sender._rtx_ssrc}
        rtp_parameters["encodings"] = [encoding]

        consumer = AiortcConsumer(self, producer, rtp_parameters, consumer_type, paused, sender)
        if not paused:
            consumer.start()
        return consumer

    def _on_close(self) -> None:
        self._connected.clear()
        self.spawn(_stop_quietly("dtls", self._dtls_transport.stop()), f"transport-close-dtls-{self.id}")
        self.spawn(_stop_quietly("ice", self._ice_transport.stop()), f"transport-close-ice-{self.id}")


class AiortcRouter(Router):
    """aiortc 라우터. 모든 consumer가 하나의 MediaRelay를 공유합니다."""

    def __init__(self, router_id: str, rtp_capabilities: Dict[str, Any], worker: "AiortcWorker"):
        super().__init__(router_id, rtp_capabilities, worker)
        self.relay = MediaRelay()

    async def _create_webrtc_transport(
        self,
        listen_ips: List[Dict[str, Any]],
        enable_udp: bool,
        enable_tcp: bool,
        prefer_udp: bool,
        initial_available_outgoing_bitrate: Optional[int],
    ) -> WebRtcTransport:
        if enable_tcp:
            logger.debug("[MediaEngine] aiortc는 TCP 후보를 수집하지 않음 (UDP만 사용)")

        gatherer = RTCIceGatherer(iceServers=[])
        await gatherer.gather()

        candidates = filter_candidates(gatherer.getLocalCandidates(), listen_ips, enable_udp)
        if not candidates:
            raise MediaEngineError(f"no local ICE candidate matches listen_ips {listen_ips}")

        worker = self.worker
        for candidate in candidates:
            if not worker.rtc_min_port <= candidate["port"] <= worker.rtc_max_port:
                logger.warning(
                    f"[MediaEngine] 후보 포트 {candidate['port']}가 RTC 포트 범위 "
                    f"{worker.rtc_min_port}-{worker.rtc_max_port} 밖에 있음"
                )

        ice_transport = RTCIceTransport(gatherer)
        dtls_transport = RTCDtlsTransport(ice_transport, [RTCCertificate.generateCertificate()])
        transport = AiortcWebRtcTransport(
            self, gatherer, ice_transport, dtls_transport, candidates, initial_available_outgoing_bitrate
        )
        logger.info(f"[MediaEngine] transport 생성: {transport.id[:8]} (후보 {len(candidates)}개)")
        return transport


class AiortcWorker(Worker):
    """프로세스 내 aiortc 워커."""

    def __init__(self, rtc_min_port: int, rtc_max_port: int):
        super().__init__(os.getpid())
        self.rtc_min_port = rtc_min_port
        self.rtc_max_port = rtc_max_port

    async def _create_router(self, router_id: str, rtp_capabilities: Dict[str, Any]) -> Router:
        supported = {
            codec.mimeType.lower()
            for kind in rtp.MEDIA_KINDS
            for codec in get_capabilities(kind).codecs
        }
        for codec in rtp_capabilities["codecs"]:
            if codec["mimeType"].lower() not in supported:
                raise MediaEngineError(f"codec not supported by aiortc: {codec['mimeType']}")

        router = AiortcRouter(router_id, rtp_capabilities, self)
        logger.info(
            f"[MediaEngine] 라우터 생성: {router_id[:8]} "
            f"(코덱 {[c['mimeType'] for c in rtp_capabilities['codecs']]})"
        )
        return router
