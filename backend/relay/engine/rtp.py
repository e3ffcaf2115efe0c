"""RTP 능력(capability) 협상 유틸리티.

라우터가 클라이언트에게 제공하는 RTP capabilities를 생성하고,
consumer가 특정 producer를 소비할 수 있는지 판단하며,
consumer 측 RTP 파라미터를 만들어냅니다.

모든 함수는 순수 함수이며 dict 기반의 WebRTC 파라미터 표현을 사용합니다.
(mediasoup-client가 주고받는 camelCase 키 형식과 동일)

Examples:
    >>> caps = generate_router_rtp_capabilities([
    ...     {"kind": "audio", "mimeType": "audio/opus", "clockRate": 48000, "channels": 2},
    ... ])
    >>> caps["codecs"][0]["preferredPayloadType"]
    100
"""

import copy
import random
from typing import Any, Dict, Iterable, List, Optional

MEDIA_KINDS = ("audio", "video")

# 동적 페이로드 타입 범위 (RFC 3551)
DYNAMIC_PAYLOAD_TYPES = tuple(range(100, 128)) + tuple(range(96, 100)) + tuple(range(35, 64))

RTCP_FEEDBACK = {
    "audio": [
        {"type": "transport-cc", "parameter": ""},
    ],
    "video": [
        {"type": "nack", "parameter": ""},
        {"type": "nack", "parameter": "pli"},
        {"type": "ccm", "parameter": "fir"},
        {"type": "goog-remb", "parameter": ""},
        {"type": "transport-cc", "parameter": ""},
    ],
}

HEADER_EXTENSIONS = [
    {"kind": "audio", "uri": "urn:ietf:params:rtp-hdrext:sdes:mid", "preferredId": 1,
     "preferredEncrypt": False, "direction": "sendrecv"},
    {"kind": "video", "uri": "urn:ietf:params:rtp-hdrext:sdes:mid", "preferredId": 1,
     "preferredEncrypt": False, "direction": "sendrecv"},
    {"kind": "audio", "uri": "http://www.webrtc.org/experiments/rtp-hdrext/abs-send-time",
     "preferredId": 4, "preferredEncrypt": False, "direction": "sendrecv"},
    {"kind": "video", "uri": "http://www.webrtc.org/experiments/rtp-hdrext/abs-send-time",
     "preferredId": 4, "preferredEncrypt": False, "direction": "sendrecv"},
    {"kind": "video",
     "uri": "http://www.ietf.org/id/draft-holmer-rmcat-transport-wide-cc-extensions-01",
     "preferredId": 5, "preferredEncrypt": False, "direction": "sendrecv"},
    {"kind": "audio", "uri": "urn:ietf:params:rtp-hdrext:ssrc-audio-level", "preferredId": 10,
     "preferredEncrypt": False, "direction": "sendrecv"},
]


def is_rtx_codec(codec: Dict[str, Any]) -> bool:
    """RTX(재전송) 코덱 여부."""
    return str(codec.get("mimeType", "")).lower().endswith("/rtx")


def _codec_kind(codec: Dict[str, Any]) -> str:
    return str(codec.get("mimeType", "")).split("/", 1)[0].lower()


def _h264_profile(parameters: Dict[str, Any]) -> str:
    # profile_idc + profile_iop (constraint flags), level은 비교하지 않음
    return str(parameters.get("profile-level-id", "42e01f")).lower()[:4]


def generate_router_rtp_capabilities(media_codecs: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """설정된 미디어 코덱 목록으로 라우터 RTP capabilities를 생성합니다.

    각 코덱에 preferredPayloadType을 부여하고(설정에 없으면 동적 범위에서 할당),
    비디오 코덱에는 RTX 코덱을 짝지어 추가합니다.

    Args:
        media_codecs: 코덱 설정 목록. 각 항목은 kind, mimeType, clockRate를 필수로 가짐

    Returns:
        dict: {"codecs": [...], "headerExtensions": [...]}

    Raises:
        ValueError: 코덱 설정이 잘못된 경우
    """
    media_codecs = [copy.deepcopy(dict(codec)) for codec in media_codecs]
    if not media_codecs:
        raise ValueError("media_codecs must not be empty")

    used = {
        codec["preferredPayloadType"]
        for codec in media_codecs
        if codec.get("preferredPayloadType") is not None
    }
    free = (pt for pt in DYNAMIC_PAYLOAD_TYPES if pt not in used)

    def next_payload_type() -> int:
        try:
            return next(free)
        except StopIteration:
            raise ValueError("no more dynamic payload types available") from None

    codecs: List[Dict[str, Any]] = []
    for media_codec in media_codecs:
        kind = media_codec.get("kind")
        mime_type = media_codec.get("mimeType")
        if kind not in MEDIA_KINDS:
            raise ValueError(f"invalid codec kind: {kind!r}")
        if not isinstance(mime_type, str) or _codec_kind(media_codec) != kind:
            raise ValueError(f"invalid codec mimeType: {mime_type!r}")
        if is_rtx_codec(media_codec):
            raise ValueError("RTX codecs are added automatically and cannot be configured")
        if not isinstance(media_codec.get("clockRate"), int):
            raise ValueError(f"invalid clockRate for {mime_type}")

        payload_type = media_codec.get("preferredPayloadType") or next_payload_type()
        codec = {
            "kind": kind,
            "mimeType": mime_type,
            "preferredPayloadType": payload_type,
            "clockRate": media_codec["clockRate"],
            "parameters": dict(media_codec.get("parameters") or {}),
            "rtcpFeedback": copy.deepcopy(RTCP_FEEDBACK[kind]),
        }
        if kind == "audio":
            codec["channels"] = media_codec.get("channels", 1)
        codecs.append(codec)

        if kind == "video":
            codecs.append({
                "kind": "video",
                "mimeType": "video/rtx",
                "preferredPayloadType": next_payload_type(),
                "clockRate": codec["clockRate"],
                "parameters": {"apt": payload_type},
                "rtcpFeedback": [],
            })

    return {"codecs": codecs, "headerExtensions": copy.deepcopy(HEADER_EXTENSIONS)}


def codecs_match(codec: Dict[str, Any], capability: Dict[str, Any]) -> bool:
    """producer 코덱과 capability 코덱이 같은 포맷인지 비교합니다.

    mimeType(대소문자 무시), clockRate, 오디오 채널 수를 비교하고
    H264는 packetization-mode와 profile까지 확인합니다.
    """
    mime_type = str(codec.get("mimeType", "")).lower()
    if mime_type != str(capability.get("mimeType", "")).lower():
        return False
    if codec.get("clockRate") != capability.get("clockRate"):
        return False
    if _codec_kind(codec) == "audio" and codec.get("channels", 1) != capability.get("channels", 1):
        return False

    if mime_type == "video/h264":
        params = codec.get("parameters") or {}
        cap_params = capability.get("parameters") or {}
        if int(params.get("packetization-mode", 0)) != int(cap_params.get("packetization-mode", 0)):
            return False
        if _h264_profile(params) != _h264_profile(cap_params):
            return False

    return True


def _has_payload_type(capability: Dict[str, Any]) -> bool:
    # payload type이 없는 capability 코덱은 consumer 파라미터를 만들 수 없음
    payload_type = capability.get("preferredPayloadType")
    return isinstance(payload_type, int) and not isinstance(payload_type, bool)


def can_consume(producer_rtp_parameters: Dict[str, Any], rtp_capabilities: Dict[str, Any]) -> bool:
    """rtp_capabilities로 producer 스트림을 수신할 수 있는지 판단합니다.

    producer의 미디어 코덱(RTX 제외) 중 하나라도 capabilities의 코덱과
    일치하면 소비 가능합니다.

    Args:
        producer_rtp_parameters: producer의 rtpParameters
        rtp_capabilities: 소비하려는 클라이언트의 rtpCapabilities

    Returns:
        bool: 소비 가능 여부

    Raises:
        TypeError: rtp_capabilities 형식이 dict가 아닌 경우
    """
    if not isinstance(rtp_capabilities, dict):
        raise TypeError("rtp_capabilities must be a dict")

    capability_codecs = [
        cap for cap in rtp_capabilities.get("codecs") or []
        if _has_payload_type(cap)
    ]
    producer_codecs = [
        codec for codec in producer_rtp_parameters.get("codecs") or []
        if not is_rtx_codec(codec)
    ]

    return any(
        codecs_match(codec, capability)
        for codec in producer_codecs
        for capability in capability_codecs
        if not is_rtx_codec(capability)
    )


def get_consumer_type(producer_rtp_parameters: Dict[str, Any]) -> str:
    """producer 인코딩 수에 따라 consumer 타입을 결정합니다 (simple | simulcast)."""
    encodings = producer_rtp_parameters.get("encodings") or []
    return "simulcast" if len(encodings) > 1 else "simple"


def generate_ssrc() -> int:
    return random.randint(100000000, 900000000)


def get_consumer_rtp_parameters(
    producer_rtp_parameters: Dict[str, Any],
    rtp_capabilities: Dict[str, Any],
    ssrc: Optional[int] = None,
) -> Dict[str, Any]:
    """consumer가 사용할 RTP 파라미터를 생성합니다.

    producer 코덱을 consumer capabilities의 payload type으로 다시 매핑하고,
    양쪽 모두 RTX를 지원하면 RTX 코덱과 RTX SSRC를 추가합니다.
    인코딩은 항상 하나이며 새 SSRC를 사용합니다.

    Args:
        producer_rtp_parameters: producer의 rtpParameters
        rtp_capabilities: consumer의 rtpCapabilities
        ssrc: 사용할 SSRC (None이면 새로 생성)

    Returns:
        dict: consumer rtpParameters

    Raises:
        ValueError: 일치하는 코덱이 없는 경우
    """
    capability_codecs = [
        cap for cap in rtp_capabilities.get("codecs") or []
        if _has_payload_type(cap)
    ]
    codecs: List[Dict[str, Any]] = []
    kind = None

    for codec in producer_rtp_parameters.get("codecs") or []:
        if is_rtx_codec(codec):
            continue
        capability = next(
            (cap for cap in capability_codecs
             if not is_rtx_codec(cap) and codecs_match(codec, cap)),
            None,
        )
        if capability is None:
            continue

        kind = kind or _codec_kind(codec)
        payload_type = capability["preferredPayloadType"]
        entry = {
            "mimeType": capability["mimeType"],
            "payloadType": payload_type,
            "clockRate": capability["clockRate"],
            "parameters": dict(codec.get("parameters") or {}),
            "rtcpFeedback": copy.deepcopy(capability.get("rtcpFeedback") or []),
        }
        if _codec_kind(codec) == "audio":
            entry["channels"] = capability.get("channels", 1)
        codecs.append(entry)

        rtx = next(
            (cap for cap in capability_codecs
             if is_rtx_codec(cap) and (cap.get("parameters") or {}).get("apt") == payload_type),
            None,
        )
        if rtx is not None:
            codecs.append({
                "mimeType": rtx["mimeType"],
                "payloadType": rtx["preferredPayloadType"],
                "clockRate": rtx["clockRate"],
                "parameters": {"apt": payload_type},
                "rtcpFeedback": [],
            })

    if not codecs:
        raise ValueError("no compatible codec between producer and rtp_capabilities")

    producer_uris = {
        ext.get("uri") for ext in producer_rtp_parameters.get("headerExtensions") or []
    }
    header_extensions = [
        {"uri": ext["uri"], "id": ext["preferredId"], "encrypt": False, "parameters": {}}
        for ext in rtp_capabilities.get("headerExtensions") or []
        if ext.get("kind") == kind and ext.get("uri") in producer_uris
    ]

    ssrc = ssrc or generate_ssrc()
    encoding: Dict[str, Any] = {"ssrc": ssrc}
    if any(is_rtx_codec(codec) for codec in codecs):
        encoding["rtx"] = {"ssrc": ssrc + 1}

    producer_rtcp = producer_rtp_parameters.get("rtcp") or {}
    return {
        "codecs": codecs,
        "headerExtensions": header_extensions,
        "encodings": [encoding],
        "rtcp": {
            "cname": producer_rtcp.get("cname") or f"relay-{ssrc}",
            "reducedSize": True,
            "mux": True,
        },
    }


def validate_rtp_parameters(rtp_parameters: Dict[str, Any]) -> None:
    """producer rtpParameters의 최소 형식을 확인합니다.

    Raises:
        ValueError: codecs가 비어 있거나 payloadType/clockRate가 없는 경우
    """
    if not isinstance(rtp_parameters, dict):
        raise ValueError("rtpParameters must be an object")
    codecs = rtp_parameters.get("codecs")
    if not codecs:
        raise ValueError("rtpParameters.codecs must not be empty")
    for codec in codecs:
        if not isinstance(codec.get("payloadType"), int):
            raise ValueError(f"missing payloadType for codec {codec.get('mimeType')!r}")
        if not isinstance(codec.get("clockRate"), int):
            raise ValueError(f"missing clockRate for codec {codec.get('mimeType')!r}")
    if all(is_rtx_codec(codec) for codec in codecs):
        raise ValueError("rtpParameters.codecs has no media codec")


def check_producer_codecs(
    kind: str,
    rtp_parameters: Dict[str, Any],
    router_rtp_capabilities: Dict[str, Any],
) -> None:
    """producer 코덱이 라우터가 지원하는 코덱인지 확인합니다.

    RTX를 제외한 모든 미디어 코덱이 kind와 같은 종류여야 하고
    라우터 capabilities의 코덱 중 하나와 일치해야 합니다.

    Raises:
        ValueError: kind가 다르거나 라우터가 지원하지 않는 코덱인 경우
    """
    router_codecs = [
        cap for cap in router_rtp_capabilities.get("codecs") or []
        if not is_rtx_codec(cap)
    ]
    for codec in rtp_parameters.get("codecs") or []:
        if is_rtx_codec(codec):
            continue
        mime_type = codec.get("mimeType")
        if _codec_kind(codec) != kind:
            raise ValueError(f"codec {mime_type!r} does not match kind {kind!r}")
        if not any(codecs_match(codec, cap) for cap in router_codecs):
            raise ValueError(f"unsupported codec {mime_type!r}")
