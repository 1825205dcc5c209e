"""Unit tests for CLI commands."""

from unittest import mock

import pytest
from click.testing import CliRunner

from mesh_rtc.cli import cli
from mesh_rtc.errors import IceFailed
from mesh_rtc.peer import PeerConnectionState
from mesh_rtc.rtc_call import RosterLogger
from mesh_rtc.session import CallSnapshot, PeerSnapshot


@pytest.fixture
def runner():
    """Create a CLI runner for testing."""
    return CliRunner()


class TestJoinCommand:
    def test_defaults(self, runner):
        with mock.patch("mesh_rtc.cli.run_call") as run_call:
            result = runner.invoke(cli, ["join"])
        assert result.exit_code == 0
        run_call.assert_called_once_with(room_id=None, name=None, server=None, audio=True, video=True)

    def test_options(self, runner):
        with mock.patch("mesh_rtc.cli.run_call") as run_call:
            result = runner.invoke(
                cli,
                ["join", "R1", "--name", "Ada", "--server", "ws://s:9000", "--no-video"],
            )
        assert result.exit_code == 0
        run_call.assert_called_once_with(
            room_id="R1", name="Ada", server="ws://s:9000", audio=True, video=False
        )

    def test_help(self, runner):
        result = runner.invoke(cli, ["join", "--help"])
        assert result.exit_code == 0
        assert "--no-audio" in result.output


class TestServeCommand:
    def test_runs_server(self, runner):
        with mock.patch("mesh_rtc.cli.run_server", new_callable=mock.AsyncMock) as run_server:
            result = runner.invoke(cli, ["serve", "--host", "0.0.0.0", "--port", "9000"])
        assert result.exit_code == 0
        run_server.assert_awaited_once_with("0.0.0.0", 9000)

    def test_bad_port(self, runner):
        result = runner.invoke(cli, ["serve", "--port", "eighty"])
        assert result.exit_code != 0


def snapshot(**peers):
    return CallSnapshot(
        room_id="R1",
        connected=True,
        local_preview=None,
        peers={
            cid: PeerSnapshot(cid, cid.title(), state) for cid, state in peers.items()
        },
    )


class TestRosterLogger:
    def test_tracks_state_changes(self):
        roster = RosterLogger()

        roster(snapshot(ada=PeerConnectionState.NEGOTIATING))
        roster(snapshot(ada=PeerConnectionState.CONNECTED, bob=PeerConnectionState.NEW))

        assert roster.states == {"ada": "connected", "bob": "new"}

    def test_departures_and_errors(self):
        roster = RosterLogger()
        roster(snapshot(ada=PeerConnectionState.CONNECTED))

        failed = CallSnapshot(
            room_id="R1",
            connected=True,
            local_preview=None,
            failed_peers={"ada": IceFailed("gone", "ada")},
        )
        roster(failed)

        assert roster.states == {}
