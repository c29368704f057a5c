"""
Test the command line helpers and the tip listing command.
"""

from typer.testing import CliRunner

from memofeed import cli
from memofeed.services.tip_jar import Tip


runner = CliRunner()


def test_block_time_rendering():
    assert cli._when(None) == "-"
    assert cli._when(0) == "-"
    assert cli._when(1_700_000_000) == "2023-11-14T22:13:20+00:00"


class StubService:
    closed = False

    async def recent_tips(self):
        return [Tip(signature="tipsignature", sender="SenderWallet", lamports=2_500_000, block_time=1_700_000_000)]

    async def close(self):
        StubService.closed = True


def test_tips_command(monkeypatch):
    monkeypatch.setattr(cli.FeedService, "from_settings", classmethod(lambda cls, *args, **kwargs: StubService()))

    result = runner.invoke(cli.app, ["tips"])

    assert result.exit_code == 0
    assert "0.0025" in result.output
    assert "SenderWa" in result.output
    assert StubService.closed
