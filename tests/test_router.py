"""Tests for topic routing, payload decoding and the broker-side caches."""
import json
import threading
from unittest.mock import Mock, patch

from session_capture.devices import DeviceRegistry
from session_capture.message_cache import MessageCache
from session_capture.router import TopicRouter, decode_payload, extract_sensor_id
from session_capture.state_cache import DEVICES_FILE, StateCache


class TestExtractSensorId:
    """Sensor identity derivation from topics."""

    def test_last_segment(self):
        assert extract_sensor_id("zigbee2mqtt/TEMP-1") == "TEMP-1"

    def test_generic_suffix_uses_previous_segment(self):
        assert extract_sensor_id("zigbee2mqtt/TEMP-1/get") == "TEMP-1"
        assert extract_sensor_id("zigbee2mqtt/TEMP-1/set") == "TEMP-1"
        assert extract_sensor_id("zigbee2mqtt/living room/availability") == "living room"

    def test_single_segment(self):
        assert extract_sensor_id("sensor") == "sensor"

    def test_trailing_slash_ignored(self):
        assert extract_sensor_id("zigbee2mqtt/MOTION-1/") == "MOTION-1"


class TestDecodePayload:

    def test_json_bytes(self):
        assert decode_payload(b'{"temperature": 21.5}') == {"temperature": 21.5}

    def test_text_fallback(self):
        assert decode_payload(b"online") == "online"

    def test_invalid_utf8_is_replaced(self):
        decoded = decode_payload(b"\xff\xfeabc")
        assert isinstance(decoded, str)
        assert decoded.endswith("abc")


class TestTopicRouter:
    """Dispatch to session sinks."""

    def test_filtered_session_receives_matching_topics_only(self, router):
        sink = Mock()
        router.register_session(1, ["TEMP-1"], sink)

        assert router.on_message("zigbee2mqtt/TEMP-1", b'{"temperature": 21.5}') == 1
        assert router.on_message("zigbee2mqtt/MOTION-1", b'{"occupancy": true}') == 0

        sink.write.assert_called_once()
        sensor_id, topic, payload, timestamp = sink.write.call_args[0]
        assert sensor_id == "TEMP-1"
        assert topic == "zigbee2mqtt/TEMP-1"
        assert payload == {"temperature": 21.5}
        assert timestamp.endswith("Z")

    def test_empty_filter_captures_everything(self, router):
        sink = Mock()
        router.register_session(1, [], sink)

        router.on_message("zigbee2mqtt/TEMP-1", b"{}")
        router.on_message("livinglab/door", b"open")

        assert sink.write.call_count == 2

    def test_failing_sink_does_not_block_others(self, router):
        broken = Mock()
        broken.write.side_effect = RuntimeError("disk gone")
        healthy = Mock()
        router.register_session(1, [], broken)
        router.register_session(2, [], healthy)

        assert router.on_message("zigbee2mqtt/TEMP-1", b"{}") == 1
        healthy.write.assert_called_once()

    def test_unregister(self, router):
        sink = Mock()
        router.register_session(1, [], sink)

        assert router.unregister_session(1) is True
        assert router.unregister_session(1) is False
        assert router.on_message("zigbee2mqtt/TEMP-1", b"{}") == 0
        sink.write.assert_not_called()

    def test_messages_are_cached_per_topic(self, router):
        router.on_message("zigbee2mqtt/TEMP-1", b'{"temperature": 20}')
        router.on_message("zigbee2mqtt/TEMP-1", b'{"temperature": 21}')

        cached = router.message_cache.get_messages("zigbee2mqtt/TEMP-1")
        assert [m.payload["temperature"] for m in cached] == [20, 21]
        assert "zigbee2mqtt/TEMP-1" in router.topics()

    def test_device_list_updates_registry_and_is_persisted(self, tmp_path):
        cache = MessageCache(10)
        devices = DeviceRegistry()
        state = StateCache(str(tmp_path), cache, devices)
        router = TopicRouter(cache, devices, state_cache=state)

        payload = [
            {"friendly_name": "TEMP-1", "ieee_address": "0x01"},
            {"friendly_name": "MOTION-1", "ieee_address": "0x02"},
        ]
        router.on_message("zigbee2mqtt/bridge/devices", json.dumps(payload).encode())

        assert devices.device_count() == 2
        assert devices.get_device("0x02")["friendly_name"] == "MOTION-1"
        with open(tmp_path / DEVICES_FILE) as f:
            assert len(json.load(f)) == 2


class TestMessageCache:

    def test_oldest_evicted_when_full(self):
        cache = MessageCache(capacity_per_topic=3)
        for i in range(5):
            cache.add("t", i, f"ts{i}")

        assert [m.payload for m in cache.get_messages("t")] == [2, 3, 4]

    def test_snapshot_restore(self):
        cache = MessageCache(capacity_per_topic=3)
        cache.add("a", {"x": 1}, "ts")

        restored = MessageCache(capacity_per_topic=3)
        assert restored.restore(cache.snapshot()) == 1
        assert restored.get_messages("a")[0].payload == {"x": 1}


class TestStateCache:
    """Hybrid save trigger and backups."""

    def test_save_after_n_messages(self, tmp_path):
        state = StateCache(str(tmp_path), MessageCache(), DeviceRegistry(), save_every_messages=3)
        state.record_topic("a")
        state.record_topic("b")
        assert state.should_save() is False
        state.record_topic("c")
        assert state.should_save() is True

    def test_save_after_interval(self, tmp_path):
        state = StateCache(
            str(tmp_path), MessageCache(), DeviceRegistry(),
            save_every_messages=100, save_interval_seconds=30,
        )
        state.record_topic("a")
        assert state.maybe_save(now=state._last_save + 31) is True
        assert (tmp_path / "mqtt-topics.json").exists()

    def test_load_restores_topics(self, tmp_path):
        cache = MessageCache()
        state = StateCache(str(tmp_path), cache, DeviceRegistry())
        cache.add("zigbee2mqtt/TEMP-1", {"temperature": 21.5}, "ts")
        state.record_topic("zigbee2mqtt/TEMP-1")
        state.save()

        reloaded = StateCache(str(tmp_path), MessageCache(), DeviceRegistry())
        reloaded.load()
        assert reloaded.topics() == ["zigbee2mqtt/TEMP-1"]

    def test_concurrent_saves_do_not_collide(self, tmp_path):
        cache = MessageCache()
        state = StateCache(str(tmp_path), cache, DeviceRegistry())
        for i in range(200):
            cache.add(f"zigbee2mqtt/SENSOR-{i}", {"value": i}, "ts")
            state.record_topic(f"zigbee2mqtt/SENSOR-{i}")

        def save_repeatedly():
            for _ in range(30):
                state.save()

        with patch("session_capture.state_cache.logger") as mock_logger:
            threads = [threading.Thread(target=save_repeatedly) for _ in range(2)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(30)

        assert mock_logger.error.call_count == 0
        with open(tmp_path / "mqtt-messages.json") as f:
            assert len(json.load(f)) == 200
        with open(tmp_path / "mqtt-topics.json") as f:
            assert len(json.load(f)) == 200
        assert list(tmp_path.glob("*.tmp")) == []
        assert list(tmp_path.glob(".*.tmp")) == []

    def test_backups_pruned(self, tmp_path):
        state = StateCache(str(tmp_path), MessageCache(), DeviceRegistry(), max_backups=2)
        state.save()
        for _ in range(4):
            state.backup()

        assert len(list((tmp_path / "backups").glob("mqtt-messages-*.json"))) == 2
