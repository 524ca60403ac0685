"""duo-rtc: pair two participants and negotiate a direct WebRTC connection."""

__version__ = "0.1.0"
