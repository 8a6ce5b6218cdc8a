"""
Utility modules for the NearMe reminder backend.

This package contains shared utilities used across the application:
- clock: timezone-aware time helpers
- formatting: reminder copy formatting
- logging_config: structured logging
- websocket: per-user WebSocket channels
"""
