"""
Folder dependency resolution.

Folders are created parents first, and the destination uid of every folder
written is recorded in an IdentifierMap so children and dashboards can be
pointed at it.
"""

import threading
from typing import Dict, List, Optional, Tuple

from grafana_migrator.core.models import Folder


class CycleError(ValueError):
    """The source folder graph is not a forest."""

    def __init__(self, uid: str, chain: List[str]):
        super().__init__(f"Folder hierarchy cycle detected at '{uid}': {' -> '.join(chain)}")
        self.uid = uid
        self.chain = chain


class IdentifierMap:
    """Source uid -> destination uid for one migration run. Safe to share between workers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._mapping: Dict[str, str] = {}

    def set(self, source_uid: str, destination_uid: str):
        with self._lock:
            self._mapping[source_uid] = destination_uid

    def get(self, source_uid: str) -> Optional[str]:
        with self._lock:
            return self._mapping.get(source_uid)

    def __len__(self) -> int:
        with self._lock:
            return len(self._mapping)

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._mapping)


class DependencyResolver:
    """Orders folders by depth and resolves source uids against an IdentifierMap."""

    def __init__(self, identifier_map: Optional[IdentifierMap] = None):
        self.identifier_map = identifier_map if identifier_map is not None else IdentifierMap()

    def folder_depths(self, folders: List[Folder]) -> Dict[str, int]:
        """
        Depth of every folder: 0 for roots, parent depth + 1 otherwise.

        A parent uid missing from ``folders`` ends the walk, so the folder is
        placed as if its parent were a root.

        Raises:
            CycleError: if an ancestor walk exceeds len(folders) hops
        """
        by_uid = {folder.uid: folder for folder in folders}
        limit = len(folders)
        depths: Dict[str, int] = {}

        for folder in folders:
            chain = [folder.uid]
            current = folder.parent_uid
            hops = 0
            while current and current in by_uid:
                hops += 1
                chain.append(current)
                if hops > limit:
                    raise CycleError(folder.uid, chain)
                current = by_uid[current].parent_uid
            depths[folder.uid] = hops

        return depths

    def order_folders(self, folders: List[Folder]) -> List[Folder]:
        """Sort by depth, roots first. Folders at equal depth keep their listing order."""
        depths = self.folder_depths(folders)
        return sorted(folders, key=lambda folder: depths[folder.uid])

    def group_by_depth(self, folders: List[Folder]) -> List[List[Folder]]:
        """One list per depth level; every parent sits in an earlier level than its children."""
        depths = self.folder_depths(folders)
        levels: List[List[Folder]] = [[] for _ in range(max(depths.values(), default=-1) + 1)]
        for folder in folders:
            levels[depths[folder.uid]].append(folder)
        return levels

    def resolve(self, source_uid: Optional[str]) -> Tuple[Optional[str], bool]:
        """
        Destination uid for a source folder uid.

        Returns ``(None, False)`` when nothing has been recorded for it; callers
        place the entity at root level.
        """
        if not source_uid:
            return None, False
        destination_uid = self.identifier_map.get(source_uid)
        return destination_uid, destination_uid is not None

    def record(self, source_uid: str, destination_uid: str):
        self.identifier_map.set(source_uid, destination_uid)
