"""
Tests for the terminal client's command parsing and rendering.
"""

import pytest

from client import Client, CommandError, parse_command


class TestParseCommand:
    def test_plain_text_is_public_message(self):
        assert parse_command("hello all", "alice") == ("sendMessage", {"user": "alice", "text": "hello all"})

    def test_login(self):
        assert parse_command("/login bob", None) == ("registerUser", {"username": "bob"})

    def test_private_message_keeps_spaces(self):
        method, params = parse_command("/pm bob see you  soon", "alice")
        assert method == "sendPrivateMessage"
        assert params == {"sender": "alice", "recipient": "bob", "text": "see you  soon"}

    @pytest.mark.parametrize("line,method", [
        ("/who", "getOnlineUsers"),
        ("/history", "getChatHistory"),
        ("/stats", "getStorageStats"),
        ("/reset", "resetAllData"),
    ])
    def test_queries(self, line, method):
        assert parse_command(line, None) == (method, {})

    @pytest.mark.parametrize("line", ["hi", "/pm bob hi"])
    def test_must_login_first(self, line):
        with pytest.raises(CommandError):
            parse_command(line, None)

    def test_unknown_command(self):
        with pytest.raises(CommandError):
            parse_command("/dance", "alice")


class TestClientState:
    def test_login_response_sets_username(self):
        client = Client("ws://localhost:1")
        client.pending[1] = ("registerUser", {"username": "alice"})

        client.on_response({"id": 1, "result": {"registered": True}})

        assert client.username == "alice"
        assert client.pending == {}

    def test_data_reset_logs_out(self, capsys):
        client = Client("ws://localhost:1")
        client.username = "alice"

        client.on_notification({"method": "dataReset", "params": {}})

        assert client.username is None
        assert "reset" in capsys.readouterr().out


class FakeSocket:
    def __init__(self, frames):
        self.frames = frames

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for frame in self.frames:
            yield frame


class TestRecvLoop:
    async def test_non_object_frames_do_not_stop_the_loop(self, capsys):
        client = Client("ws://localhost:1")
        client.username = "alice"

        await client.recv_loop(FakeSocket(["3", '["x"]', '{"method":"dataReset","params":{}}']))

        assert client.username is None
        assert capsys.readouterr().out.count("unknown message") == 2
