# statcache/persistence.py

"""
Durable image of the whole FlowStatCache.

- save_cache(): full overwrite at the end of every poll cycle. The image is
  written to "<path>.tmp" and renamed into place, so a crash mid-write leaves
  the previous image intact.
- load_cache(): read once at startup. A missing, unreadable or malformed image
  means a cold start (empty cache), never an error.
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict, Optional

from statcache.stats_config import CACHE_IMAGE_VERSION

log = logging.getLogger(__name__)


def save_cache(cache, path: str):
    """Serialize `cache` to `path` atomically. Raises OSError on I/O failure."""
    image = cache.to_dict()
    image["version"] = CACHE_IMAGE_VERSION
    image["saved_at"] = time.time()

    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)

    tmp = f"{path}.tmp"
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(image, f, separators=(",", ":"))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def read_image(path: str) -> Optional[Dict[str, Any]]:
    """Return the decoded image, or None if the file does not exist."""
    if not os.path.exists(path):
        return None
    with open(path, "r", encoding="utf-8") as f:
        image = json.load(f)

    assert isinstance(image, dict), f"cache image {path} is not a JSON object"
    version = image.get("version")
    assert version == CACHE_IMAGE_VERSION, f"cache image {path} has version {version}, expected {CACHE_IMAGE_VERSION}"
    return image


def load_cache(cache, path: str, logger=None) -> bool:
    """
    Warm `cache` from `path`. Returns True if an image was loaded.
    Any failure leaves the cache empty (cold start).
    """
    logger = logger or log
    try:
        image = read_image(path)
    except (OSError, ValueError, AssertionError) as e:
        logger.warning("Cache image %s unreadable, cold start: %s", path, e)
        return False

    if image is None:
        logger.info("No cache image at %s, cold start.", path)
        return False

    try:
        cache.load_dict(image)
    except (AttributeError, KeyError, TypeError, ValueError, AssertionError) as e:
        logger.warning("Cache image %s malformed, cold start: %s", path, e)
        return False

    logger.info("Cache warmed from %s (%d switches).", path, len(cache.switches()))
    return True
