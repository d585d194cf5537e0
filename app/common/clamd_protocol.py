from __future__ import annotations

import struct

# clamd(8): a "z" prefix means the command is NUL-delimited, an "n" prefix
# means newline-delimited. Replies are NUL-terminated for z-commands.
CMD_PING = b"zPING\0"
CMD_VERSION = b"zVERSION\0"
CMD_RELOAD = b"zRELOAD\0"
CMD_STATS = b"zSTATS\0"
CMD_VERSIONCOMMANDS = b"nVERSIONCOMMANDS\n"
CMD_SHUTDOWN = b"zSHUTDOWN\0"
CMD_INSTREAM = b"zINSTREAM\0"

RESP_RELOAD = b"RELOADING"
RESP_SCAN_OK = b"stream: OK"
RESP_ERR_UNKNOWN_COMMAND = b"UNKNOWN COMMAND"
RESP_ERR_SIZE_LIMIT_EXCEEDED = b"INSTREAM size limit exceeded. ERROR"

RESPONSE_TERMINATOR = b"\0"

SCAN_PREFIX = b"stream: "
SCAN_FOUND_SUFFIX = b"FOUND"

# INSTREAM chunk lengths are unsigned 32-bit integers in network byte order.
_CHUNK_LENGTH = struct.Struct("!I")
MAX_CHUNK_LENGTH = 0xFFFFFFFF
INSTREAM_TERMINATOR = b"\0\0\0\0"


def command_name(command: bytes) -> str:
    """Return the bare clamd command name, e.g. ``b"zPING\\0"`` -> ``"PING"``."""
    return command[1:].rstrip(b"\0\n").decode("ascii")


def encode_chunk_length(size: int) -> bytes:
    if size < 0 or size > MAX_CHUNK_LENGTH:
        raise ValueError(f"INSTREAM length out of range: {size}")
    return _CHUNK_LENGTH.pack(size)

