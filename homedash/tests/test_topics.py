import pytest

from homedash.engine.topics import (
    InvalidTopicPattern,
    command_topic_for,
    compile_pattern,
    is_command_topic,
    is_valid_device,
    matches,
    resolve_device,
    translate_pattern,
)
from homedash.models import Device


def make_device(device_id, topic, **extra):
    return Device(id=device_id, name=device_id.title(), topic=topic, **extra)


def test_exact_topic_matches():
    assert matches("AABBCC/door1", "AABBCC/door1")
    assert not matches("AABBCC/door1", "AABBCC/door2")


def test_single_level_wildcard():
    assert matches("room/+/temp", "room/A/temp")
    assert matches("room/+/temp", "room/B/temp")
    assert not matches("room/+/temp", "room/A/B/temp")
    assert not matches("room/+/temp", "room//temp")


def test_multi_level_wildcard_does_not_match_bare_prefix():
    assert matches("room/#", "room/A")
    assert matches("room/#", "room/A/B")
    assert not matches("room/#", "room")
    assert not matches("room/#", "roomA/B")


def test_literal_levels_are_not_regex():
    assert matches("home/+/a.b", "home/x/a.b")
    assert not matches("home/+/a.b", "home/x/aXb")


@pytest.mark.parametrize("pattern", ["room/#/temp", "room/te+", "room/#x"])
def test_malformed_patterns_never_match(pattern):
    with pytest.raises(InvalidTopicPattern):
        translate_pattern(pattern)
    assert compile_pattern(pattern) is None
    assert not matches(pattern, "room/anything/temp")


def test_command_topics():
    assert is_command_topic("AABBCC/relay1_sub")
    assert not is_command_topic("AABBCC/relay1")

    assert command_topic_for(make_device("r", "AABBCC/relay1")) == "AABBCC/relay1_sub"
    assert command_topic_for(make_device("r", "a/b", command_topic="a/set")) == "a/set"
    assert command_topic_for(make_device("r", "a/+/b")) is None


@pytest.mark.parametrize(
    "device",
    [
        Device(),
        Device(id="x", name="X"),
        Device(id="x", name="", topic="t"),
        Device(id="x", name="   ", topic="t"),
        Device(id="x", name="X", topic="null"),
        Device(id="undefined", name="X", topic="t"),
    ],
)
def test_invalid_devices(device):
    assert not is_valid_device(device)


def test_valid_device():
    assert is_valid_device(make_device("x", "t"))
    assert not is_valid_device(None)


def test_first_registered_device_wins():
    broad = make_device("broad", "home/+/temp")
    exact = make_device("exact", "home/kitchen/temp")

    assert resolve_device([broad, exact], "home/kitchen/temp") is broad
    assert resolve_device([exact, broad], "home/kitchen/temp") is exact
    assert resolve_device([exact, broad], "home/garage/temp") is broad


def test_resolve_skips_invalid_and_command_devices():
    invalid = Device(id="bad", name="null", topic="a/b")
    command = make_device("cmd", "a/b_sub")
    good = make_device("good", "a/#")

    assert resolve_device([invalid, good], "a/b") is good
    assert resolve_device([command], "a/b_sub") is None
    assert resolve_device([], "a/b") is None


def test_malformed_pattern_is_translated_once():
    compile_pattern.cache_clear()

    for _ in range(5):
        assert not matches("bad/#/pattern", "bad/x/pattern")

    info = compile_pattern.cache_info()
    assert info.misses == 1
    assert info.hits == 4
