"""Tests for capture_agent.py: argument handling and display selection."""

import asyncio

from biotracker.capture_agent import build_parser, request_first_display
from biotracker.config import RELAY_URL
from biotracker.relay_client import RelayClient


class RecordingClient(RelayClient):
    """A RelayClient that records pair requests instead of sending them."""

    def __init__(self):
        super().__init__()
        self.requested = []

    async def request_pairing(self, target_id):
        self.requested.append(target_id)
        return True


def test_defaults_run_the_camera_side():
    args = build_parser().parse_args([])
    assert args.display is False
    assert args.relay == RELAY_URL
    assert args.retries == 3
    assert args.pair == "" and args.export == ""


def test_display_options():
    args = build_parser().parse_args(
        ["--display", "--relay", "http://relay:3000", "--retries", "5", "--export", "history.csv"]
    )
    assert args.display is True
    assert args.relay == "http://relay:3000"
    assert args.retries == 5
    assert args.export == "history.csv"


def test_camera_pairs_with_the_first_listed_display():
    async def scenario():
        client = RecordingClient()
        asked = set()
        await client._dispatch({"type": "available_laptops", "laptops": ["L1", "L2"]})
        first = await request_first_display(client, asked)
        again = await request_first_display(client, asked)
        return client, first, again

    client, first, again = asyncio.run(scenario())
    assert first == "L1"
    assert again == "L2"
    assert client.requested == ["L1", "L2"]


def test_camera_waits_for_a_display_to_connect():
    async def scenario():
        client = RecordingClient()
        asked = set()
        assert await request_first_display(client, asked) is None

        await client._dispatch({"type": "laptop_connected", "laptopId": "L9"})
        assert await request_first_display(client, asked) == "L9"

        await client._dispatch({"type": "pair_confirmed", "sourceId": "L9"})
        await client._dispatch({"type": "laptop_connected", "laptopId": "L10"})
        assert await request_first_display(client, asked) is None
        return client

    client = asyncio.run(scenario())
    assert client.requested == ["L9"]
