import json, sys, time
from enum import Enum

import numpy as np


def _encode(value):
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def log(event: str, stream=None, **fields):
    rec = {"ts": time.time(), "event": event}
    rec.update(fields)
    stream = stream if stream is not None else sys.stdout
    stream.write(json.dumps(rec, default=_encode) + "\n")
    stream.flush()
