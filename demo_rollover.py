#!/usr/bin/env python3
"""Demonstrate that rolling restarts hand over without downtime.

Run it directly: the supervisor starts this same file as a worker. Each
worker bumps a counter kept in a state file, asks for a restart, and the
third one asks the whole demo to exit.
"""

import asyncio
import json
import logging
import os
import sys
from pathlib import Path

import rollover
from rollover import client

STATE_FILE = Path("/tmp/rollover_demo_state.json")


def save_state(counter):
    """Save state to file."""
    STATE_FILE.write_text(json.dumps({"counter": counter}))


def load_state():
    """Load state from file."""
    if STATE_FILE.exists():
        data = json.loads(STATE_FILE.read_text())
        return data.get("counter", 0)
    return 0


async def worker():
    counter = load_state() + 1
    save_state(counter)

    print(f"Worker #{counter} - PID: {os.getpid()} booting", file=sys.stderr)
    await asyncio.sleep(0.5)  # pretend to load something expensive

    await client.await_ready()
    print(f"Worker #{counter} - PID: {os.getpid()} serving", file=sys.stderr)
    await asyncio.sleep(1)

    if counter < 3:
        print(f"Requesting restart (iteration {counter}/3)...", file=sys.stderr)
        client.request_restart()
    else:
        print("Done! Cleaning up state.", file=sys.stderr)
        STATE_FILE.unlink(missing_ok=True)
        client.request_exit(0)

    # Serve until the orchestrator retires this worker
    await asyncio.Event().wait()


async def supervisor():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    STATE_FILE.unlink(missing_ok=True)

    exit_codes = []
    async with await rollover.start(path=Path(__file__), exit_process=exit_codes.append) as orchestrator:
        await orchestrator.wait_destroyed()
    return exit_codes[0] if exit_codes else 1


def main():
    if client.is_supervisor():
        sys.exit(asyncio.run(supervisor()))
    asyncio.run(worker())


if __name__ == "__main__":
    main()
