"""Remote execution over SSH (native client first, asyncssh fallback)."""
