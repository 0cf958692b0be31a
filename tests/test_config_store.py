"""Tests for the persisted configuration store (commander_tools.config_store)."""

import json
from unittest.mock import patch

import pytest

from commander_tools.config_store import (
    DEFAULT_CONFIG,
    ConfigStore,
    coerce_config_value,
    validate_config_value,
)
from commander_tools.errors import ConfigError, ErrorKind, WriteOutcome

ARRAY_INPUTS = [
    ["/tmp", "/home"],
    '["/tmp","/home"]',
    "/tmp",
    "['/tmp'",
    '"quoted"',
    "{not json",
    '{"a": 1}',
    "",
    None,
    42,
    3.5,
    True,
    False,
    {"path": "/tmp"},
    (),
    ("a", "b"),
]


class TestCoerceConfigValue:
    def test_json_array_string_is_parsed(self):
        assert coerce_config_value("allowedDirectories", '["/tmp","/home"]') == ["/tmp", "/home"]

    def test_plain_string_is_wrapped(self):
        assert coerce_config_value("blockedCommands", "rm") == ["rm"]

    def test_malformed_bracket_input_is_kept_whole(self):
        assert coerce_config_value("blockedCommands", "[rm, dd") == ["[rm, dd"]

    def test_string_parsing_to_non_array_wraps_original(self):
        assert coerce_config_value("blockedCommands", "123") == ["123"]
        assert coerce_config_value("blockedCommands", '"rm"') == ['"rm"']

    def test_null_becomes_empty_array(self):
        assert coerce_config_value("allowedDirectories", None) == []

    def test_scalars_become_string_form(self):
        assert coerce_config_value("blockedCommands", 3) == ["3"]
        assert coerce_config_value("blockedCommands", True) == ["true"]
        assert coerce_config_value("blockedCommands", 1.5) == ["1.5"]

    def test_object_string_for_array_key_becomes_compact_json(self):
        assert coerce_config_value("allowedDirectories", '{"a": 1}') == ['{"a":1}']

    def test_existing_list_kept_as_is(self):
        value = ["a", 1]
        assert coerce_config_value("blockedCommands", value) == ["a", 1]

    def test_non_array_key_object_string_parsed(self):
        assert coerce_config_value("custom", '{"a": [1, 2]}') == {"a": [1, 2]}

    def test_non_array_key_invalid_json_kept(self):
        assert coerce_config_value("custom", "[oops") == "[oops"

    def test_non_array_key_plain_string_untouched(self):
        assert coerce_config_value("defaultShell", "/bin/zsh") == "/bin/zsh"
        assert coerce_config_value("fileReadLineLimit", "1000") == "1000"


class TestValidateConfigValue:
    def test_known_keys_accept_declared_types(self):
        assert validate_config_value("defaultShell", "/bin/bash") == "/bin/bash"
        assert validate_config_value("fileReadLineLimit", 500) == 500
        assert validate_config_value("telemetryEnabled", False) is False
        assert validate_config_value("blockedCommands", ["rm"]) == ["rm"]

    @pytest.mark.parametrize(
        "key,value",
        [
            ("fileReadLineLimit", "1000"),
            ("fileReadLineLimit", 0),
            ("fileWriteLineLimit", -5),
            ("fileWriteLineLimit", True),
            ("telemetryEnabled", "false"),
            ("defaultShell", 5),
            ("blockedCommands", ["rm", 1]),
        ],
    )
    def test_known_keys_reject_wrong_types(self, key, value):
        with pytest.raises(ConfigError) as exc_info:
            validate_config_value(key, value)
        assert exc_info.value.kind is ErrorKind.VALIDATION_FAILED
        assert key in str(exc_info.value)

    def test_unknown_key_accepts_any_json(self):
        assert validate_config_value("custom", {"nested": [1, "two", None]}) == {
            "nested": [1, "two", None]
        }

    def test_unknown_key_rejects_non_json(self):
        with pytest.raises(ConfigError):
            validate_config_value("custom", float("nan"))
        with pytest.raises(ConfigError):
            validate_config_value("custom", object())

    def test_empty_key_rejected(self):
        with pytest.raises(ConfigError):
            validate_config_value("", "x")
        with pytest.raises(ConfigError):
            validate_config_value("   ", "x")


class TestLoad:
    @pytest.mark.asyncio
    async def test_missing_file_yields_empty_document(self, store):
        result = await store.load()
        assert not result.ok
        assert result.error_kind is ErrorKind.LOAD_FAILED
        assert store.read() == {}
        assert store.last_error

    @pytest.mark.asyncio
    async def test_invalid_json_does_not_raise(self, store, config_file):
        config_file.parent.mkdir(parents=True)
        config_file.write_text("{ this is not json")
        result = await store.load()
        assert not result.ok
        assert store.read() == {}

    @pytest.mark.asyncio
    async def test_non_object_document_is_load_failure(self, store, config_file):
        config_file.parent.mkdir(parents=True)
        config_file.write_text('["a", "b"]')
        result = await store.load()
        assert not result.ok
        assert "JSON object" in result.message
        assert store.read() == {}

    @pytest.mark.asyncio
    async def test_unreadable_path_does_not_raise(self, tmp_path):
        store = ConfigStore(tmp_path)  # a directory, not a file
        result = await store.load()
        assert not result.ok
        assert store.read() == {}

    @pytest.mark.asyncio
    async def test_valid_document_loaded(self, store, config_file):
        config_file.parent.mkdir(parents=True)
        config_file.write_text(json.dumps({"defaultShell": "/bin/zsh", "extra": {"a": 1}}))
        result = await store.load()
        assert result.ok
        assert store.read() == {"defaultShell": "/bin/zsh", "extra": {"a": 1}}
        assert store.last_error is None

    @pytest.mark.asyncio
    async def test_bom_is_tolerated(self, store, config_file):
        config_file.parent.mkdir(parents=True)
        config_file.write_bytes(b"\xef\xbb\xbf" + json.dumps({"defaultShell": "sh"}).encode())
        result = await store.load()
        assert result.ok
        assert store.get("defaultShell") == "sh"

    @pytest.mark.asyncio
    async def test_hand_edited_array_keys_are_normalized(self, store, config_file):
        config_file.parent.mkdir(parents=True)
        config_file.write_text(
            json.dumps({"allowedDirectories": "/srv", "blockedCommands": None, "note": "kept"})
        )
        result = await store.load()
        assert result.ok
        assert store.read() == {"allowedDirectories": ["/srv"], "blockedCommands": [], "note": "kept"}

    @pytest.mark.asyncio
    async def test_json_text_array_on_disk_is_parsed(self, store, config_file):
        config_file.parent.mkdir(parents=True)
        config_file.write_text(json.dumps({"blockedCommands": '["rm", "dd"]'}))
        await store.load()
        assert store.get("blockedCommands") == ["rm", "dd"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "key,value",
        [
            ("fileReadLineLimit", "100"),
            ("fileWriteLineLimit", 0),
            ("telemetryEnabled", "no"),
            ("defaultShell", ["bash"]),
            ("allowedDirectories", [1, 2]),
        ],
    )
    async def test_invalid_known_keys_fall_back_to_defaults(self, store, config_file, key, value):
        config_file.parent.mkdir(parents=True)
        config_file.write_text(json.dumps({key: value, "extra": 1}))
        result = await store.load()
        assert result.ok
        assert key not in store.read()
        assert store.read()["extra"] == 1
        assert store.get(key) == DEFAULT_CONFIG[key]

    @pytest.mark.asyncio
    async def test_store_usable_after_load_failure(self, store, config_file):
        await store.load()
        result = await store.write("blockedCommands", "rm")
        assert result.outcome is WriteOutcome.SAVED
        assert json.loads(config_file.read_text()) == {"blockedCommands": ["rm"]}


class TestReadAndGet:
    @pytest.mark.asyncio
    async def test_read_returns_copy(self, store):
        await store.write("blockedCommands", ["rm"])
        snapshot = store.read()
        snapshot["blockedCommands"].append("dd")
        assert store.read()["blockedCommands"] == ["rm"]

    def test_get_falls_back_to_defaults(self, store):
        assert store.get("fileReadLineLimit") == DEFAULT_CONFIG["fileReadLineLimit"]
        assert store.get("blockedCommands") == DEFAULT_CONFIG["blockedCommands"]
        assert store.get("unknown", "fallback") == "fallback"

    @pytest.mark.asyncio
    async def test_get_prefers_stored_value(self, store):
        await store.write("allowedDirectories", [])
        assert store.get("allowedDirectories") == []
        await store.write("fileReadLineLimit", 10)
        assert store.get("fileReadLineLimit") == 10


class TestWrite:
    @pytest.mark.asyncio
    async def test_json_array_string_example(self, store):
        result = await store.write("allowedDirectories", '["/tmp","/home"]')
        assert result.outcome is WriteOutcome.SAVED
        assert store.read()["allowedDirectories"] == ["/tmp", "/home"]

    @pytest.mark.asyncio
    async def test_single_command_example(self, store):
        await store.write("blockedCommands", "rm")
        assert store.read()["blockedCommands"] == ["rm"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["allowedDirectories", "blockedCommands"])
    @pytest.mark.parametrize("raw", ARRAY_INPUTS)
    async def test_array_keys_always_hold_string_arrays(self, store, key, raw):
        result = await store.write(key, raw)
        document = store.read()
        if result.ok:
            assert isinstance(document[key], list)
            assert all(isinstance(item, str) for item in document[key])
        else:
            assert key not in document

    @pytest.mark.asyncio
    async def test_array_key_with_non_string_elements_rejected(self, store):
        await store.write("blockedCommands", ["rm"])
        result = await store.write("blockedCommands", "[1, 2]")
        assert result.outcome is WriteOutcome.REJECTED
        assert result.error_kind is ErrorKind.VALIDATION_FAILED
        assert store.read()["blockedCommands"] == ["rm"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "key,value",
        [
            ("fileReadLineLimit", "abc"),
            ("fileWriteLineLimit", 0),
            ("telemetryEnabled", "yes"),
            ("defaultShell", ["bash"]),
            ("", "x"),
        ],
    )
    async def test_rejection_leaves_document_unchanged(self, store, config_file, key, value):
        await store.write("defaultShell", "/bin/sh")
        before = store.read()
        on_disk = config_file.read_text()

        result = await store.write(key, value)

        assert result.outcome is WriteOutcome.REJECTED
        assert not result.ok
        assert store.read() == before
        assert config_file.read_text() == on_disk

    @pytest.mark.asyncio
    async def test_free_form_keys_preserved(self, store, config_file):
        await store.write("custom", '{"nested": {"x": [1, 2]}}')
        await store.write("note", "plain text")
        assert store.read()["custom"] == {"nested": {"x": [1, 2]}}
        assert json.loads(config_file.read_text())["note"] == "plain text"

    @pytest.mark.asyncio
    async def test_saved_document_round_trips_through_load(self, store, config_file):
        await store.write("allowedDirectories", ["/srv"])
        await store.write("fileWriteLineLimit", 80)
        reloaded = ConfigStore(config_file)
        assert (await reloaded.load()).ok
        assert reloaded.read() == store.read()

    @pytest.mark.asyncio
    async def test_no_temp_files_left_behind(self, store, config_file):
        await store.write("defaultShell", "/bin/bash")
        assert [p.name for p in config_file.parent.iterdir()] == ["config.json"]


class TestPersistenceFailure:
    @pytest.mark.asyncio
    async def test_failed_persist_reports_partial_success(self, store):
        with patch(
            "commander_tools.config_store._write_document",
            side_effect=OSError("disk full"),
        ):
            result = await store.write("defaultShell", "/bin/bash")

        assert result.outcome is WriteOutcome.UNSAVED
        assert result.ok and result.partial
        assert result.error_kind is ErrorKind.PERSIST_FAILED
        assert store.read()["defaultShell"] == "/bin/bash"
        assert store.dirty is True
        assert "disk full" in store.last_error

    @pytest.mark.asyncio
    async def test_unwritable_location(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = ConfigStore(blocker / "config.json")

        result = await store.write("blockedCommands", "rm")

        assert result.outcome is WriteOutcome.UNSAVED
        assert store.read()["blockedCommands"] == ["rm"]
        assert store.dirty

    @pytest.mark.asyncio
    async def test_array_invariant_holds_on_partial_success(self, store):
        with patch(
            "commander_tools.config_store._write_document",
            side_effect=OSError("read-only file system"),
        ):
            await store.write("allowedDirectories", 7)
        assert store.read()["allowedDirectories"] == ["7"]

    @pytest.mark.asyncio
    async def test_save_retries_and_clears_dirty(self, store, config_file):
        with patch(
            "commander_tools.config_store._write_document",
            side_effect=OSError("disk full"),
        ):
            await store.write("defaultShell", "/bin/bash")
            with pytest.raises(ConfigError) as exc_info:
                await store.save()
            assert exc_info.value.kind is ErrorKind.PERSIST_FAILED

        await store.save()
        assert not store.dirty
        assert json.loads(config_file.read_text()) == {"defaultShell": "/bin/bash"}

    @pytest.mark.asyncio
    async def test_next_successful_write_clears_dirty(self, store):
        with patch(
            "commander_tools.config_store._write_document",
            side_effect=OSError("disk full"),
        ):
            await store.write("defaultShell", "/bin/bash")
        result = await store.write("fileReadLineLimit", 20)
        assert result.outcome is WriteOutcome.SAVED
        assert not store.dirty
