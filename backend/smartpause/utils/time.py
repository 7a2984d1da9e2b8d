import time

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_now() -> str:
    return time.strftime(ISO_FORMAT, time.gmtime())


def utc_ago(seconds: float) -> str:
    """Timestamp ``seconds`` in the past, comparable with stored ``utc_now`` values."""
    return time.strftime(ISO_FORMAT, time.gmtime(time.time() - seconds))


def epoch_ms() -> int:
    return int(time.time() * 1000)
