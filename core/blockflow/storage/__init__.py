"""Durable storage for paused executions."""

from blockflow.storage.pause_store import FilePauseStore, InMemoryPauseStore, PauseStore

__all__ = ["FilePauseStore", "InMemoryPauseStore", "PauseStore"]
