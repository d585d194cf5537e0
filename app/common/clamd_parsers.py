from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Optional

from common.clamd_protocol import RESP_SCAN_OK
from common.errors import ClamAVError, ClamdParseError, ClamdVirusFound

Verdict = Literal["clean", "infected", "error"]

_STATS_SEP = ": "
_VERSIONCOMMANDS_SEP = "| COMMANDS: "
_SCAN_PREFIX = "stream: "
_SCAN_FOUND = "FOUND"

# QUEUE spans several lines, up to the whitespace preceding MEMSTATS.
_QUEUE_RE = re.compile(r"QUEUE: (.*?)\sMEMSTATS", re.DOTALL)


@dataclass(frozen=True)
class StatsRecord:
    pools: int
    state: str
    threads: str
    queue: str
    memstats: str

    def as_dict(self) -> dict:
        return {
            "pools": self.pools,
            "state": self.state,
            "threads": self.threads,
            "queue": self.queue,
            "memstats": self.memstats,
        }


@dataclass(frozen=True)
class VersionCommandsRecord:
    version: str
    commands: tuple[str, ...]

    def as_dict(self) -> dict:
        return {"clamav_version": self.version, "commands": list(self.commands)}


def _field_value(line: str) -> str:
    parts = line.split(_STATS_SEP)
    if len(parts) != 2:
        raise ClamdParseError("error while parsing 'stats'")
    return parts[1]


def parse_stats(text: str) -> StatsRecord:
    """
    Parse the reply of the clamd STATS command, e.g.::

        POOLS: 1

        STATE: VALID PRIMARY
        THREADS: live 1  idle 0 max 10 idle-timeout 30
        QUEUE: 0 items
            STATS 0.000111

        MEMSTATS: heap N/A mmap N/A used N/A free N/A releasable N/A pools 1 ...
        END

    Raises ClamdParseError unless every section is present and well formed.
    """
    if not text:
        raise ClamdParseError("error while parsing 'stats': empty string")

    pools: Optional[int] = None
    state: Optional[str] = None
    threads: Optional[str] = None
    queue: Optional[str] = None
    memstats: Optional[str] = None

    for line in text.splitlines():
        if line.startswith("POOLS: "):
            raw = _field_value(line)
            if not (raw.isascii() and raw.isdigit()):
                raise ClamdParseError(f"error while parsing 'stats': bad POOLS value {raw!r}")
            pools = int(raw)
        elif line.startswith("STATE: "):
            state = _field_value(line)
        elif line.startswith("THREADS: "):
            threads = _field_value(line)
        elif line.startswith("QUEUE: "):
            match = _QUEUE_RE.search(text)
            if not match:
                raise ClamdParseError("error while parsing 'stats': QUEUE not followed by MEMSTATS")
            queue = match.group(1).removesuffix("\n")
        elif line.startswith("MEMSTATS: "):
            memstats = _field_value(line)

    missing = [
        name
        for name, value in (
            ("POOLS", pools),
            ("STATE", state),
            ("THREADS", threads),
            ("QUEUE", queue),
            ("MEMSTATS", memstats),
        )
        if value is None
    ]
    if missing:
        raise ClamdParseError(
            f"error while parsing 'stats': missing {', '.join(missing)}"
        )

    return StatsRecord(
        pools=pools,  # type: ignore[arg-type]
        state=state,  # type: ignore[arg-type]
        threads=threads,  # type: ignore[arg-type]
        queue=queue,  # type: ignore[arg-type]
        memstats=memstats,  # type: ignore[arg-type]
    )


def parse_version_commands(text: str) -> VersionCommandsRecord:
    # "ClamAV 1.0.0/26804/Mon Feb  6 08:47:07 2023| COMMANDS: SCAN QUIT RELOAD ..."
    parts = text.split(_VERSIONCOMMANDS_SEP)
    if len(parts) != 2:
        raise ClamdParseError("error while parsing 'versioncommands'")
    version, commands = parts
    return VersionCommandsRecord(
        version=version,
        commands=tuple(commands.removesuffix("\n").split(" ")),
    )


def extract_signature(text: str) -> str:
    """Signature name from ``"stream: <name> FOUND"``; other input is returned unchanged."""
    if not (text.startswith(_SCAN_PREFIX) and text.endswith(_SCAN_FOUND)):
        return text
    return text[len(_SCAN_PREFIX) : -len(_SCAN_FOUND)].strip()


@dataclass(frozen=True)
class ScanOutcome:
    verdict: Verdict
    raw: str
    signature: Optional[str] = None
    error: Optional[ClamAVError] = None

    @property
    def infected(self) -> bool:
        return self.verdict == "infected"

    @staticmethod
    def from_response(response: bytes) -> ScanOutcome:
        raw = response.decode("utf-8", "replace")
        if response == RESP_SCAN_OK:
            return ScanOutcome(verdict="clean", raw=raw)
        return ScanOutcome(verdict="error", raw=raw)

    @staticmethod
    def from_error(exc: ClamAVError) -> ScanOutcome:
        response = getattr(exc, "response", None) or b""
        raw = response.decode("utf-8", "replace")
        if isinstance(exc, ClamdVirusFound):
            return ScanOutcome(
                verdict="infected", raw=raw, signature=extract_signature(raw), error=exc
            )
        return ScanOutcome(verdict="error", raw=raw, error=exc)

    def as_dict(self) -> dict:
        if self.infected:
            return {
                "status": "error",
                "msg": ClamdVirusFound.message,
                "signature": self.signature or "",
                "virus_found": True,
            }
        if self.verdict == "clean":
            return {
                "status": "noerror",
                "msg": RESP_SCAN_OK.decode("ascii"),
                "signature": "",
                "virus_found": False,
            }
        return {
            "status": "error",
            "msg": str(self.error) if self.error else self.raw,
            "signature": "",
            "virus_found": False,
        }
