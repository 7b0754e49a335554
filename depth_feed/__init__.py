"""Binance collaborators (REST snapshots, WS diff-depth stream, sinks) and the runner."""
