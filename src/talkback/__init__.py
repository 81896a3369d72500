"""talkback: streamed chat, continuous dictation and a duplex voice loop."""

__version__ = "0.1.0"
