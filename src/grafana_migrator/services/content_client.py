"""
Content client for one Grafana instance.

Wraps the folder, dashboard and datasource APIs. Upserts look the entity up
by its stable key first so that running a migration twice updates instead of
duplicating.
"""

from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
import structlog

from grafana_migrator.core.api_client import APIClient, RemoteError
from grafana_migrator.core.config import Config, InstanceConfig
from grafana_migrator.core.models import (
    Dashboard,
    Datasource,
    Folder,
    Outcome,
    normalize_folder_uid,
)


class ContentClient:
    """Folder, dashboard and datasource API calls against one instance."""

    search_endpoint = "/api/search"
    folders_endpoint = "/api/folders"
    dashboards_endpoint = "/api/dashboards"
    datasources_endpoint = "/api/datasources"

    def __init__(self, instance: InstanceConfig, config: Config, name: str = 'src',
                 transport: Optional[httpx.BaseTransport] = None):
        self.name = name
        self.host = instance.host
        self.api = APIClient(instance, config, name=name, transport=transport)
        self.logger = structlog.get_logger(f"content_client_{name}")

    # ---------- listing ----------

    def list_folders(self) -> List[Folder]:
        """List every folder, nested ones included, in the instance's listing order."""
        try:
            hits = self.api.get_paginated(self.search_endpoint, params={'type': 'dash-folder'})
        except RemoteError as e:
            if e.status_code != 404:
                raise
            # Older instances without folder search: top level folders only
            self.logger.warning("Folder search unavailable, falling back to folder listing")
            hits = self.api.get(self.folders_endpoint) or []

        folders = []
        for hit in hits:
            if not hit.get('uid'):
                continue
            folders.append(Folder(
                uid=hit['uid'],
                title=hit.get('title', ''),
                parent_uid=normalize_folder_uid(hit.get('folderUid') or hit.get('parentUid')),
                id=hit.get('id'),
            ))

        self.logger.info("Listed folders", instance=self.name, count=len(folders))
        return folders

    def list_dashboards(self) -> List[Dashboard]:
        """List dashboard summaries. Payloads are empty until fetched with get_dashboard_detail."""
        hits = self.api.get_paginated(self.search_endpoint, params={'type': 'dash-db'})

        dashboards = [
            Dashboard(
                uid=hit['uid'],
                title=hit.get('title', ''),
                folder_uid=normalize_folder_uid(hit.get('folderUid')),
                id=hit.get('id'),
            )
            for hit in hits if hit.get('uid')
        ]

        self.logger.info("Listed dashboards", instance=self.name, count=len(dashboards))
        return dashboards

    def list_datasources(self) -> List[Datasource]:
        items = self.api.get(self.datasources_endpoint) or []
        datasources = [Datasource.model_validate(item) for item in items]
        self.logger.info("Listed datasources", instance=self.name, count=len(datasources))
        return datasources

    def get_dashboard_detail(self, uid: str) -> Dashboard:
        """Fetch the full dashboard JSON; search only returns summaries."""
        response = self.api.get(f"{self.dashboards_endpoint}/uid/{quote(uid, safe='')}")
        payload = response.get('dashboard', {})
        meta = response.get('meta', {})

        return Dashboard(
            uid=payload.get('uid', uid),
            title=payload.get('title', ''),
            folder_uid=normalize_folder_uid(meta.get('folderUid')),
            payload=payload,
            id=payload.get('id'),
            version=payload.get('version', meta.get('version')),
            created=meta.get('created'),
            updated=meta.get('updated'),
        )

    def health(self) -> Dict[str, Any]:
        return self.api.get("/api/health")

    # ---------- upserts ----------

    def upsert_folder(self, folder: Folder) -> Tuple[Folder, Outcome]:
        """Create the folder, or update its title when the uid already exists."""
        uid = quote(folder.uid, safe='')
        existing = self.api.get_optional(f"{self.folders_endpoint}/{uid}")

        if existing is None:
            body = {'uid': folder.uid, 'title': folder.title}
            if folder.parent_uid:
                body['parentUid'] = folder.parent_uid
            response = self.api.post(self.folders_endpoint, json_data=body)
            outcome = Outcome.CREATED
        else:
            if normalize_folder_uid(existing.get('parentUid')) != folder.parent_uid:
                # PUT cannot move a folder; the destination keeps its current parent
                self.logger.warning(
                    "Folder parent differs on destination",
                    uid=folder.uid,
                    destination_parent=existing.get('parentUid'),
                    source_parent=folder.parent_uid
                )
            body = {'title': folder.title, 'overwrite': True}
            response = self.api.put(f"{self.folders_endpoint}/{uid}", json_data=body)
            outcome = Outcome.UPDATED

        written = Folder(
            uid=response.get('uid', folder.uid),
            title=response.get('title', folder.title),
            parent_uid=normalize_folder_uid(response.get('parentUid', folder.parent_uid)),
            id=response.get('id'),
            version=response.get('version'),
        )
        return written, outcome

    def upsert_dashboard(self, dashboard: Dashboard, message: str = "Migrated by grafana-migrator") -> Tuple[Dashboard, Outcome]:
        """Save the dashboard through the overwrite-enabled dashboard endpoint."""
        existing = self.api.get_optional(f"{self.dashboards_endpoint}/uid/{quote(dashboard.uid, safe='')}")

        body: Dict[str, Any] = {
            'dashboard': {**dashboard.payload, 'uid': dashboard.uid, 'title': dashboard.title, 'id': None},
            'overwrite': True,
            'message': message,
        }
        if dashboard.folder_uid:
            body['folderUid'] = dashboard.folder_uid

        response = self.api.post(f"{self.dashboards_endpoint}/db", json_data=body)

        written = dashboard.model_copy(update={
            'uid': response.get('uid', dashboard.uid),
            'id': response.get('id'),
            'version': response.get('version'),
        })
        return written, Outcome.CREATED if existing is None else Outcome.UPDATED

    def find_datasource(self, datasource: Datasource) -> Optional[Dict[str, Any]]:
        """Look a datasource up by uid, then by name."""
        existing = None
        if datasource.uid:
            existing = self.api.get_optional(
                f"{self.datasources_endpoint}/uid/{quote(datasource.uid, safe='')}"
            )
        if existing is None and datasource.name:
            existing = self.api.get_optional(
                f"{self.datasources_endpoint}/name/{quote(datasource.name, safe='')}"
            )
        return existing

    def upsert_datasource(self, datasource: Datasource) -> Tuple[Datasource, Outcome]:
        """Create the datasource, or update it in place using the destination's numeric id."""
        existing = self.find_datasource(datasource)
        body = datasource.to_api()
        body.pop('secureJsonFields', None)

        if existing is None:
            response = self.api.post(self.datasources_endpoint, json_data=body)
            outcome = Outcome.CREATED
        else:
            response = self.api.put(f"{self.datasources_endpoint}/{existing['id']}", json_data=body)
            outcome = Outcome.UPDATED

        saved = response.get('datasource') or {}
        written = datasource.model_copy(update={
            'uid': saved.get('uid') or datasource.uid or (existing or {}).get('uid'),
            'id': response.get('id', saved.get('id')),
            'secure_json_data': None,
        })
        return written, outcome

    def close(self):
        self.api.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
