"""
panel-agent Instance Identity
Stable per-installation ID the panel uses to recognise a returning agent.

On disk: 16 raw bytes. On the wire: 32 lowercase hex characters.
"""

import logging
import os
import re

from . import crypto

logger = logging.getLogger(__name__)

ID_BYTES = 16
ID_PATTERN = re.compile(r'^[0-9a-f]{32}$')


def _read_instance_id(path: str):
    try:
        with open(path, 'rb') as f:
            raw = f.read()
    except FileNotFoundError:
        return None
    instance_id = raw.hex()
    if len(raw) != ID_BYTES or not ID_PATTERN.match(instance_id):
        return None
    return instance_id


def load_instance_id(path: str) -> str:
    """
    Reuse the persisted instance ID, or generate and persist a new one.

    A missing, truncated or oversized file counts as absent. Regeneration is
    logged at warning level because the panel will see a new device.
    """
    instance_id = _read_instance_id(path)
    if instance_id is not None:
        return instance_id

    raw = crypto.random_bytes(ID_BYTES)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, 'wb') as f:
        f.write(raw)
    instance_id = raw.hex()
    logger.warning("Generated new instance ID: %s", instance_id)
    return instance_id
