"""
On-disk snapshots: one JSON file per entity under folders/, dashboards/ and
datasources/, plus a manifest.json with listing order and fetch errors.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Type, TypeVar
from urllib.parse import quote, unquote

import structlog
from pydantic import BaseModel

from grafana_migrator.core.models import ContentSnapshot, Dashboard, Datasource, EntityOutcome, Folder

logger = structlog.get_logger("snapshot_store")

MANIFEST = "manifest.json"

ModelT = TypeVar("ModelT", bound=BaseModel)


def _filename(key: str) -> str:
    return f"{quote(key, safe='')}.json"


def _entity_key(entity: BaseModel) -> str:
    if isinstance(entity, Datasource):
        return entity.key
    return entity.uid


def save_snapshot(snapshot: ContentSnapshot, directory: str) -> Path:
    """
    Write ``snapshot`` under ``directory``.

    JSON files left in the entity directories by an earlier export are removed
    first so the directory always mirrors exactly one snapshot.
    """
    root = Path(directory)
    order: Dict[str, List[str]] = {}

    for subdir, entities in (('folders', snapshot.folders),
                             ('dashboards', snapshot.dashboards),
                             ('datasources', snapshot.datasources)):
        target = root / subdir
        target.mkdir(parents=True, exist_ok=True)
        for stale in target.glob("*.json"):
            stale.unlink()

        order[subdir] = []
        for entity in entities:
            key = _entity_key(entity)
            with open(target / _filename(key), 'w') as f:
                json.dump(entity.to_api(), f, indent=2, default=str)
            order[subdir].append(key)

        logger.info("Saved snapshot entities", kind=subdir, count=len(entities), directory=str(target))

    manifest = {
        'exported_at': snapshot.exported_at.isoformat(),
        'saved_at': datetime.now().isoformat(),
        'order': order,
        'fetch_errors': snapshot.fetch_errors,
        'entity_errors': [item.model_dump(mode='json') for item in snapshot.entity_errors],
    }
    with open(root / MANIFEST, 'w') as f:
        json.dump(manifest, f, indent=2)

    return root


def _load_entities(directory: Path, model: Type[ModelT], order: List[str]) -> List[ModelT]:
    if not directory.exists():
        logger.warning("Snapshot directory does not exist", directory=str(directory))
        return []

    files = {unquote(path.stem): path for path in directory.glob("*.json")}
    ordered_keys = [key for key in order if key in files]
    ordered_keys += sorted(key for key in files if key not in set(ordered_keys))

    entities = []
    for key in ordered_keys:
        with open(files[key], 'r') as f:
            entities.append(model.model_validate(json.load(f)))
    return entities


def load_snapshot(directory: str) -> ContentSnapshot:
    """
    Read a snapshot written by save_snapshot.

    Files without a manifest entry (added by hand) are loaded after the
    manifest's entries, sorted by key.
    """
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"Snapshot directory not found: {root}")

    manifest = {}
    manifest_path = root / MANIFEST
    if manifest_path.exists():
        with open(manifest_path, 'r') as f:
            manifest = json.load(f)

    order = manifest.get('order', {})
    snapshot = ContentSnapshot(
        folders=_load_entities(root / 'folders', Folder, order.get('folders', [])),
        dashboards=_load_entities(root / 'dashboards', Dashboard, order.get('dashboards', [])),
        datasources=_load_entities(root / 'datasources', Datasource, order.get('datasources', [])),
        fetch_errors=manifest.get('fetch_errors', {}),
        entity_errors=[EntityOutcome.model_validate(item) for item in manifest.get('entity_errors', [])],
    )
    if manifest.get('exported_at'):
        snapshot.exported_at = datetime.fromisoformat(manifest['exported_at'])

    logger.info(
        "Loaded snapshot",
        directory=str(root),
        folders=len(snapshot.folders),
        dashboards=len(snapshot.dashboards),
        datasources=len(snapshot.datasources),
    )
    return snapshot
