"""Type definitions for UMH Link."""

from typing import Any, Callable, Optional

# Byte source used by the frame decoder: (n, timeout_s) -> bytes | None
ReadExact = Callable[[int, float], Optional[bytes]]

# Callback types
FrameCallback = Callable[[Any], None]   # (frame: Frame)
ClosedCallback = Callable[[str], None]  # (reason)
ProbeCallback = Callable[[Any], None]   # (result: ProbeResult)

