"""Prefixed ID generation utility."""

import uuid


def generate_id(prefix: str) -> str:
    """Generate a prefixed unique ID.

    Args:
        prefix: The prefix (e.g., "fil_", "whe_", "job_").

    Returns:
        A string like "fil_a1b2c3d4e5f6a7b8".
    """
    return f"{prefix}{uuid.uuid4().hex[:16]}"


def generate_correlation_id() -> str:
    """Full UUID4 string tying together every delivery of one published event."""
    return str(uuid.uuid4())
