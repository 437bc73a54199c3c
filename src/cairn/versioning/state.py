"""Persisted version state.

Three JSON documents live in the state directory:

- `ref-state.json`: unit name → main-branch commit at the last recompute
- `ev-map.json`: unit name → effective version
- `content-hashes.json`: unit name → tree hash at that commit

They are read once at startup and rewritten after every successful
recompute. A missing or corrupt document reads as empty.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from cairn.foundation.serialization import safe_json_dump, safe_json_load
from cairn.versioning.engine import ContentHashMap, EffectiveVersionMap, RefState

logger = logging.getLogger(__name__)

REF_STATE_FILE = "ref-state.json"
EV_MAP_FILE = "ev-map.json"
CONTENT_HASHES_FILE = "content-hashes.json"


@dataclass(slots=True)
class PersistedState:
    """The three persisted documents, loaded together."""

    ref_state: RefState = field(default_factory=dict)
    ev_map: EffectiveVersionMap = field(default_factory=dict)
    content_hashes: ContentHashMap = field(default_factory=dict)


def _string_map(data: object, path: Path) -> dict[str, str]:
    if not isinstance(data, dict):
        if data is not None:
            logger.warning("Ignoring %s: expected a JSON object", path)
        return {}
    return {str(k): v for k, v in data.items() if isinstance(v, str)}


class StateStore:
    """Reads and writes the persisted version documents."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir

    @property
    def ref_state_path(self) -> Path:
        return self.state_dir / REF_STATE_FILE

    @property
    def ev_map_path(self) -> Path:
        return self.state_dir / EV_MAP_FILE

    @property
    def content_hashes_path(self) -> Path:
        return self.state_dir / CONTENT_HASHES_FILE

    def load(self) -> PersistedState:
        """Load all documents; anything missing or corrupt is empty."""
        return PersistedState(
            ref_state=_string_map(safe_json_load(self.ref_state_path), self.ref_state_path),
            ev_map=_string_map(safe_json_load(self.ev_map_path), self.ev_map_path),
            content_hashes=_string_map(
                safe_json_load(self.content_hashes_path), self.content_hashes_path
            ),
        )

    def save(
        self,
        ref_state: RefState,
        ev_map: EffectiveVersionMap,
        content_hashes: ContentHashMap,
    ) -> None:
        """Write all documents, each atomically.

        Raises:
            OSError: If a document cannot be written.
        """
        safe_json_dump(ref_state, self.ref_state_path)
        safe_json_dump(ev_map, self.ev_map_path)
        safe_json_dump(content_hashes, self.content_hashes_path)
        logger.debug("Persisted version state for %d units to %s", len(ev_map), self.state_dir)
