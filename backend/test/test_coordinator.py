import asyncio

import pytest

from relay.session import FailureKind, SignalingError

from fakes import (
    DTLS_PARAMETERS,
    INCOMPATIBLE_CAPABILITIES,
    audio_rtp_parameters,
    video_rtp_parameters,
)


async def _producer_ready(coordinator, channel):
    info = await coordinator.handle(channel, "createProducerTransport", {})
    await coordinator.handle(channel, "connectProducerTransport", {"dtlsParameters": DTLS_PARAMETERS})
    return info


async def _consumer_ready(coordinator, channel):
    info = await coordinator.handle(channel, "createConsumerTransport", {})
    await coordinator.handle(channel, "connectConsumerTransport", {"dtlsParameters": DTLS_PARAMETERS})
    return info


async def _expect_failure(coordinator, channel, event, data, kind):
    with pytest.raises(SignalingError) as excinfo:
        await coordinator.handle(channel, event, data)
    assert excinfo.value.kind is kind
    return excinfo.value


@pytest.mark.anyio
async def test_concrete_two_client_scenario(coordinator, router, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)
    caps = await coordinator.handle(a, "getRouterRtpCapabilities", {})
    await _producer_ready(coordinator, a)
    reply = await coordinator.handle(a, "produce", {"kind": "video", "rtpParameters": video_rtp_parameters()})
    assert reply == {"id": "prod-1"}

    b = make_channel()
    await coordinator.open_channel(b)
    assert len(b.notifications("newProducer")) == 1

    await _consumer_ready(coordinator, b)
    consumed = await coordinator.handle(b, "consume", {"rtpCapabilities": caps})
    assert consumed["producerId"] == "prod-1"
    assert consumed["id"] == "cons-1"
    assert consumed["kind"] == "video"
    assert consumed["type"] in ("simple", "simulcast")
    assert consumed["producerPaused"] is True

    assert await coordinator.handle(b, "resume", {}) == {}
    assert coordinator.snapshot()["consumerPaused"] is False
    assert a.notifications("newProducer") == []


@pytest.mark.anyio
async def test_producer_transport_from_reply_is_used_for_produce(coordinator, router, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)
    info = await _producer_ready(coordinator, a)

    reply = await coordinator.handle(a, "produce", {"kind": "audio", "rtpParameters": audio_rtp_parameters()})

    transport = router.transports[info["id"]]
    assert reply["id"] in transport.producers
    assert len(transport.connect_calls) == 1
    assert set(info) == {"id", "iceParameters", "iceCandidates", "dtlsParameters"}


@pytest.mark.anyio
async def test_router_capabilities_do_not_change_after_produce(coordinator, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)
    before = await coordinator.handle(a, "getRouterRtpCapabilities", {})

    await _producer_ready(coordinator, a)
    await coordinator.handle(a, "produce", {"kind": "video", "rtpParameters": video_rtp_parameters()})
    after = await coordinator.handle(a, "getRouterRtpCapabilities", {})

    assert before == after
    before["codecs"].clear()
    assert (await coordinator.handle(a, "getRouterRtpCapabilities", {}))["codecs"]


@pytest.mark.anyio
async def test_produce_notifies_every_other_channel_once(coordinator, make_channel) -> None:
    a, b, c = make_channel(), make_channel(), make_channel()
    for channel in (a, b, c):
        await coordinator.open_channel(channel)

    await _producer_ready(coordinator, a)
    await coordinator.handle(a, "produce", {"kind": "video", "rtpParameters": video_rtp_parameters()})

    assert a.notifications("newProducer") == []
    assert len(b.notifications("newProducer")) == 1
    assert len(c.notifications("newProducer")) == 1
    assert b.notifications("newProducer")[0] == {"type": "newProducer", "data": {}}


@pytest.mark.anyio
async def test_late_joiner_receives_exactly_one_new_producer(coordinator, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)
    await _producer_ready(coordinator, a)
    await coordinator.handle(a, "produce", {"kind": "audio", "rtpParameters": audio_rtp_parameters()})

    late = make_channel()
    await coordinator.open_channel(late)

    assert len(late.notifications("newProducer")) == 1


@pytest.mark.anyio
async def test_channel_without_producer_gets_no_notification(coordinator, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)
    assert a.sent == []


@pytest.mark.anyio
async def test_incompatible_consume_never_reaches_engine(coordinator, router, make_channel) -> None:
    a, b = make_channel(), make_channel()
    await coordinator.open_channel(a)
    await coordinator.open_channel(b)
    await _producer_ready(coordinator, a)
    await coordinator.handle(a, "produce", {"kind": "video", "rtpParameters": video_rtp_parameters()})
    await _consumer_ready(coordinator, b)

    await _expect_failure(
        coordinator, b, "consume", {"rtpCapabilities": INCOMPATIBLE_CAPABILITIES}, FailureKind.CANNOT_CONSUME
    )

    assert router.consume_calls == []
    assert coordinator.state.consumer is None


@pytest.mark.anyio
async def test_audio_consumer_is_not_paused(coordinator, router, make_channel) -> None:
    a, b = make_channel(), make_channel()
    await coordinator.open_channel(a)
    await coordinator.open_channel(b)
    await _producer_ready(coordinator, a)
    await coordinator.handle(a, "produce", {"kind": "audio", "rtpParameters": audio_rtp_parameters()})
    await _consumer_ready(coordinator, b)

    consumed = await coordinator.handle(b, "consume", {"rtpCapabilities": router.rtp_capabilities})

    assert consumed["kind"] == "audio"
    assert consumed["paused"] is False
    assert consumed["producerPaused"] is False
    assert consumed["rtpParameters"]["codecs"][0]["payloadType"] == 100


@pytest.mark.anyio
async def test_video_consumer_paused_until_resume(coordinator, router, make_channel) -> None:
    a, b = make_channel(), make_channel()
    await coordinator.open_channel(a)
    await coordinator.open_channel(b)
    await _producer_ready(coordinator, a)
    await coordinator.handle(a, "produce", {"kind": "video", "rtpParameters": video_rtp_parameters()})
    await _consumer_ready(coordinator, b)

    consumed = await coordinator.handle(b, "consume", {"rtpCapabilities": router.rtp_capabilities})
    consumer = coordinator.state.consumer.resource
    assert consumed["paused"] is True
    assert consumer.paused is True

    await coordinator.handle(b, "resume", {})

    assert consumer.paused is False
    assert consumer.resume_calls == 1
    assert coordinator.snapshot()["consumerPaused"] is False


@pytest.mark.anyio
async def test_simulcast_consumer_prefers_highest_layers(coordinator, router, make_channel) -> None:
    a, b = make_channel(), make_channel()
    await coordinator.open_channel(a)
    await coordinator.open_channel(b)
    await _producer_ready(coordinator, a)
    await coordinator.handle(a, "produce", {"kind": "video", "rtpParameters": video_rtp_parameters(encodings=3)})
    await _consumer_ready(coordinator, b)

    consumed = await coordinator.handle(b, "consume", {"rtpCapabilities": router.rtp_capabilities})

    consumer = coordinator.state.consumer.resource
    assert consumed["type"] == "simulcast"
    assert consumer.layer_calls == [(2, 2)]
    assert consumer.preferred_layers == {"spatialLayer": 2, "temporalLayer": 2}


@pytest.mark.anyio
async def test_double_connect_is_rejected_with_single_engine_connect(coordinator, router, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)
    info = await _producer_ready(coordinator, a)

    await _expect_failure(
        coordinator, a, "connectProducerTransport", {"dtlsParameters": DTLS_PARAMETERS},
        FailureKind.PRECONDITION_VIOLATION,
    )

    assert len(router.transports[info["id"]].connect_calls) == 1


@pytest.mark.anyio
async def test_connect_engine_failure_allows_retry(coordinator, router, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)
    info = await coordinator.handle(a, "createConsumerTransport", {})

    router.fail_connect = True
    await _expect_failure(
        coordinator, a, "connectConsumerTransport", {"dtlsParameters": DTLS_PARAMETERS}, FailureKind.ENGINE_ERROR
    )
    assert coordinator.state.consumer_transport.connected is False

    router.fail_connect = False
    await coordinator.handle(a, "connectConsumerTransport", {"dtlsParameters": DTLS_PARAMETERS})
    assert len(router.transports[info["id"]].connect_calls) == 1


@pytest.mark.anyio
async def test_connect_without_transport_is_precondition_violation(coordinator, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)

    await _expect_failure(
        coordinator, a, "connectProducerTransport", {"dtlsParameters": DTLS_PARAMETERS},
        FailureKind.PRECONDITION_VIOLATION,
    )


@pytest.mark.anyio
async def test_foreign_transport_cannot_be_connected_or_used(coordinator, make_channel) -> None:
    a, b = make_channel(), make_channel()
    await coordinator.open_channel(a)
    await coordinator.open_channel(b)
    await coordinator.handle(a, "createProducerTransport", {})

    await _expect_failure(
        coordinator, b, "connectProducerTransport", {"dtlsParameters": DTLS_PARAMETERS},
        FailureKind.PRECONDITION_VIOLATION,
    )
    await _expect_failure(
        coordinator, b, "produce", {"kind": "video", "rtpParameters": video_rtp_parameters()},
        FailureKind.PRECONDITION_VIOLATION,
    )


@pytest.mark.anyio
async def test_produce_before_connect_is_rejected(coordinator, router, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)
    info = await coordinator.handle(a, "createProducerTransport", {})

    await _expect_failure(
        coordinator, a, "produce", {"kind": "video", "rtpParameters": video_rtp_parameters()},
        FailureKind.PRECONDITION_VIOLATION,
    )
    assert router.transports[info["id"]].producers == {}


@pytest.mark.anyio
async def test_consume_without_producer_is_rejected(coordinator, router, make_channel) -> None:
    b = make_channel()
    await coordinator.open_channel(b)
    await _consumer_ready(coordinator, b)

    await _expect_failure(
        coordinator, b, "consume", {"rtpCapabilities": router.rtp_capabilities}, FailureKind.PRECONDITION_VIOLATION
    )


@pytest.mark.anyio
async def test_resume_requires_own_consumer(coordinator, router, make_channel) -> None:
    a, b = make_channel(), make_channel()
    await coordinator.open_channel(a)
    await coordinator.open_channel(b)

    await _expect_failure(coordinator, b, "resume", {}, FailureKind.PRECONDITION_VIOLATION)

    await _producer_ready(coordinator, a)
    await coordinator.handle(a, "produce", {"kind": "video", "rtpParameters": video_rtp_parameters()})
    await _consumer_ready(coordinator, b)
    await coordinator.handle(b, "consume", {"rtpCapabilities": router.rtp_capabilities})

    await _expect_failure(coordinator, a, "resume", {}, FailureKind.PRECONDITION_VIOLATION)


@pytest.mark.anyio
async def test_transport_creation_failure_is_engine_error(coordinator, router, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)
    router.fail_transport = True

    error = await _expect_failure(coordinator, a, "createProducerTransport", {}, FailureKind.ENGINE_ERROR)

    assert "no free RTC port" in error.message
    assert coordinator.state.producer_transport is None


@pytest.mark.anyio
async def test_transport_uses_configured_options_and_bitrate(coordinator, router, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)
    info = await coordinator.handle(a, "createProducerTransport", {})

    call = router.create_calls[0]
    assert call["listen_ips"] == [{"ip": "127.0.0.1", "announcedIp": "203.0.113.10"}]
    assert call["enable_udp"] and call["enable_tcp"] and call["prefer_udp"]
    assert call["initial_available_outgoing_bitrate"] == 1000000
    assert router.transports[info["id"]].max_incoming_bitrate == 1500000


@pytest.mark.anyio
async def test_bitrate_failure_is_ignored(coordinator, router, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)
    router.fail_bitrate = True

    info = await coordinator.handle(a, "createConsumerTransport", {})

    assert coordinator.state.consumer_transport.id == info["id"]


@pytest.mark.anyio
async def test_second_transport_replaces_slot(coordinator, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)
    first = await coordinator.handle(a, "createProducerTransport", {})
    second = await coordinator.handle(a, "createProducerTransport", {})

    assert coordinator.state.producer_transport.id == second["id"]
    assert first["id"] != second["id"]
    assert len(coordinator.state.transports_by_owner[a.channel_id]) == 2


@pytest.mark.anyio
async def test_second_produce_replaces_producer_reference(coordinator, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)
    await _producer_ready(coordinator, a)
    await coordinator.handle(a, "produce", {"kind": "audio", "rtpParameters": audio_rtp_parameters()})
    second = await coordinator.handle(a, "produce", {"kind": "video", "rtpParameters": video_rtp_parameters()})

    assert coordinator.state.producer.id == second["id"] == "prod-2"


@pytest.mark.anyio
async def test_unknown_event_and_invalid_payload(coordinator, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)

    await _expect_failure(coordinator, a, "joinRoom", {}, FailureKind.UNKNOWN_EVENT)
    await _producer_ready(coordinator, a)
    await _expect_failure(
        coordinator, a, "produce", {"kind": "screen", "rtpParameters": {}}, FailureKind.INVALID_REQUEST
    )
    await _expect_failure(coordinator, a, "consume", {}, FailureKind.INVALID_REQUEST)


@pytest.mark.anyio
async def test_malformed_rtp_parameters_are_engine_errors(coordinator, make_channel) -> None:
    a = make_channel()
    await coordinator.open_channel(a)
    await _producer_ready(coordinator, a)

    await _expect_failure(
        coordinator, a, "produce", {"kind": "video", "rtpParameters": {"codecs": []}}, FailureKind.ENGINE_ERROR
    )


@pytest.mark.anyio
async def test_closing_producer_channel_releases_and_notifies(coordinator, router, make_channel) -> None:
    a, b = make_channel(), make_channel()
    await coordinator.open_channel(a)
    await coordinator.open_channel(b)
    info = await _producer_ready(coordinator, a)
    await coordinator.handle(a, "produce", {"kind": "video", "rtpParameters": video_rtp_parameters()})
    await _consumer_ready(coordinator, b)
    await coordinator.handle(b, "consume", {"rtpCapabilities": router.rtp_capabilities})
    consumer = coordinator.state.consumer.resource

    await coordinator.close_channel(a.channel_id)

    assert router.transports[info["id"]].closed
    assert consumer.closed
    assert len(b.notifications("producerClosed")) == 1
    snapshot = coordinator.snapshot()
    assert snapshot["producerId"] is None
    assert snapshot["producerTransportId"] is None
    assert snapshot["consumerId"] is None
    assert snapshot["consumerTransportId"] is not None
    assert snapshot["channels"] == 1


@pytest.mark.anyio
async def test_closing_consumer_channel_keeps_producer(coordinator, router, make_channel) -> None:
    a, b = make_channel(), make_channel()
    await coordinator.open_channel(a)
    await coordinator.open_channel(b)
    await _producer_ready(coordinator, a)
    await coordinator.handle(a, "produce", {"kind": "video", "rtpParameters": video_rtp_parameters()})
    info = await _consumer_ready(coordinator, b)
    await coordinator.handle(b, "consume", {"rtpCapabilities": router.rtp_capabilities})

    await coordinator.close_channel(b.channel_id)

    assert router.transports[info["id"]].closed
    assert coordinator.state.producer.id == "prod-1"
    assert coordinator.state.consumer is None
    assert a.notifications("producerClosed") == []
    assert coordinator.snapshot()["channels"] == 1


@pytest.mark.anyio
async def test_closed_channel_stops_receiving_broadcasts(coordinator, make_channel) -> None:
    a, b = make_channel(), make_channel()
    await coordinator.open_channel(a)
    await coordinator.open_channel(b)
    await coordinator.close_channel(b.channel_id)

    await _producer_ready(coordinator, a)
    await coordinator.handle(a, "produce", {"kind": "video", "rtpParameters": video_rtp_parameters()})

    assert b.notifications("newProducer") == []


@pytest.mark.anyio
async def test_commands_run_one_at_a_time(coordinator, router, make_channel) -> None:
    a, b = make_channel(), make_channel()
    router.hold = asyncio.Event()

    first = asyncio.create_task(coordinator.handle(a, "createProducerTransport", {}))
    await asyncio.sleep(0.01)
    second = asyncio.create_task(coordinator.handle(b, "createProducerTransport", {}))
    await asyncio.sleep(0.01)

    # b waits on the gate while a is suspended inside the engine
    assert router.started_creates == 1
    assert router.create_calls == []
    assert coordinator.snapshot()["producerTransportId"] is None

    router.hold.set()
    first_info, second_info = await asyncio.gather(first, second)

    assert router.started_creates == 2
    assert [first_info["id"], second_info["id"]] == ["transport-1", "transport-2"]
    assert coordinator.snapshot()["producerTransportId"] == "transport-2"


@pytest.mark.anyio
async def test_unsupported_producer_codec_is_engine_error(coordinator, make_channel) -> None:
    a = make_channel()
    await _producer_ready(coordinator, a)
    params = video_rtp_parameters()
    params["codecs"] = [{"mimeType": "video/AV1", "payloadType": 45, "clockRate": 90000}]

    await _expect_failure(
        coordinator, a, "produce", {"kind": "video", "rtpParameters": params}, FailureKind.ENGINE_ERROR
    )
    await _expect_failure(
        coordinator, a, "produce", {"kind": "audio", "rtpParameters": video_rtp_parameters()},
        FailureKind.ENGINE_ERROR,
    )
    assert coordinator.snapshot()["producerId"] is None


@pytest.mark.anyio
async def test_capabilities_without_payload_types_cannot_consume(coordinator, router, make_channel) -> None:
    a, b = make_channel(), make_channel()
    await _producer_ready(coordinator, a)
    await coordinator.handle(a, "produce", {"kind": "video", "rtpParameters": video_rtp_parameters()})
    await _consumer_ready(coordinator, b)
    caps = router.rtp_capabilities
    for codec in caps["codecs"]:
        codec.pop("preferredPayloadType")

    await _expect_failure(coordinator, b, "consume", {"rtpCapabilities": caps}, FailureKind.CANNOT_CONSUME)
    assert router.consume_calls == []


@pytest.mark.anyio
async def test_second_consume_closes_previous_consumer(coordinator, router, make_channel) -> None:
    a, b = make_channel(), make_channel()
    await _producer_ready(coordinator, a)
    await coordinator.handle(a, "produce", {"kind": "video", "rtpParameters": video_rtp_parameters()})
    await _consumer_ready(coordinator, b)
    caps = router.rtp_capabilities

    first = await coordinator.handle(b, "consume", {"rtpCapabilities": caps})
    transport = router.transports["transport-2"]
    old_consumer = transport.consumers[first["id"]]
    second = await coordinator.handle(b, "consume", {"rtpCapabilities": caps})

    assert old_consumer.closed
    assert list(transport.consumers) == [second["id"]]
    assert coordinator.snapshot()["consumerId"] == second["id"]
