"""Public HTTP API (aiohttp) for chat and queue status."""
