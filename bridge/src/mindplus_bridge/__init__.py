"""MindPlus optimizer bridge - game state out, commands in.

A tick-synchronized bridge that:
- Runs inside the game host and is driven from its tick loop
- Publishes immutable snapshots of simulation state over ZeroMQ
- Accepts commands from an external optimizer and applies them on the tick
- Tracks optimizer sessions, their correlation ids and liveness
"""

__version__ = "0.1.0"
