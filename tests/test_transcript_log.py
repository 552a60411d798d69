"""Tests for JSONL chat transcript persistence."""

from agentshift.util.transcript_log import TranscriptLog


class TestTranscriptLog:
    """Tests for TranscriptLog."""

    def test_uses_env_directory(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AGENTSHIFT_TRANSCRIPT_DIR", str(tmp_path / "t"))
        log = TranscriptLog()
        assert log.base_dir == tmp_path / "t"
        assert log.base_dir.is_dir()

    def test_updates_replace_content(self, tmp_path):
        log = TranscriptLog(tmp_path)
        log.add_message("s1", "user", "hello")
        reply = log.add_message("s1", "assistant", "")
        log.update_message("s1", reply, "Working")
        log.update_message("s1", reply, "Working on it", tool_calls=[{"tool": "Read", "target": "a.py"}])

        messages = log.get_messages("s1")
        assert [(m.role, m.content) for m in messages] == [("user", "hello"), ("assistant", "Working on it")]
        assert messages[1].tool_calls == [{"tool": "Read", "target": "a.py"}]

    def test_update_for_unknown_message_is_ignored(self, tmp_path):
        log = TranscriptLog(tmp_path)
        log.update_message("s1", "missing", "text")
        assert log.get_messages("s1") == []

    def test_latest_conversation_id_wins(self, tmp_path):
        log = TranscriptLog(tmp_path)
        assert log.get_conversation_id("s1") is None
        log.set_conversation_id("s1", "conv-1")
        log.set_conversation_id("s1", "conv-2")
        assert log.get_conversation_id("s1") == "conv-2"

    def test_sequence_survives_restart(self, tmp_path):
        import json

        TranscriptLog(tmp_path).add_message("s1", "user", "one")
        TranscriptLog(tmp_path).add_message("s1", "user", "two")
        records = [json.loads(line) for line in (tmp_path / "s1.jsonl").read_text().splitlines()]
        assert [r["seq"] for r in records] == [1, 2]

    def test_corrupt_lines_are_skipped(self, tmp_path):
        log = TranscriptLog(tmp_path)
        log.add_message("s1", "user", "hi")
        with open(tmp_path / "s1.jsonl", "a", encoding="utf-8") as f:
            f.write("{truncated\n")
        assert [m.content for m in log.get_messages("s1")] == ["hi"]

    def test_list_sessions(self, tmp_path):
        log = TranscriptLog(tmp_path)
        log.add_message("b", "user", "x")
        log.add_message("a", "user", "y")
        assert log.list_sessions() == ["a", "b"]
