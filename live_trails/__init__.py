"""Live multi-user location trails over a shared append-only store."""

import time

# Sent to WebSocket clients so they can detect a backend restart
STARTUP_TIMESTAMP: int = int(time.time())
