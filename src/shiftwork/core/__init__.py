"""Core primitives shared by the engine, workers, API and CLI."""
