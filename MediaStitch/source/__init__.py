# 18.10.26

from .wrapper import StreamAssembler

__all__ = [
    "StreamAssembler",
]
