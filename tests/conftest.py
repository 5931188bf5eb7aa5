"""
Shared fixtures: an in-memory Grafana instance served through httpx.MockTransport.
"""

import threading
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

import httpx
import pytest

from grafana_migrator.core.config import Config
from grafana_migrator.services.content_client import ContentClient


def _json(status: int, data: Any) -> httpx.Response:
    return httpx.Response(status, json=data)


class FakeGrafana:
    """Just enough of the Grafana folder, dashboard and datasource API for the migrator."""

    def __init__(self, api_key: str = "token", id_start: int = 1, folder_uid_suffix: str = "",
                 assign_datasource_uids: bool = False):
        self.api_key = api_key
        self.folder_uid_suffix = folder_uid_suffix
        self.assign_datasource_uids = assign_datasource_uids
        self.folders: Dict[str, Dict[str, Any]] = {}
        self.dashboards: Dict[str, Dict[str, Any]] = {}
        self.datasources: Dict[int, Dict[str, Any]] = {}
        self.secrets: Dict[int, Dict[str, str]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.bodies: List[Tuple[str, str, Any]] = []
        # (method, path) -> list of failures to serve, consumed in order; None entry = forever
        self.failures: Dict[Tuple[str, str], List[Any]] = {}
        self._next_id = id_start
        self._lock = threading.Lock()

    # ---------- seeding ----------

    def _new_id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    def add_folder(self, uid: str, title: str, parent_uid: Optional[str] = None):
        self.folders[uid] = {
            'id': self._new_id(), 'uid': uid, 'title': title, 'parentUid': parent_uid,
            'version': 1, 'created': '2024-01-01T00:00:00Z', 'updated': '2024-01-01T00:00:00Z',
        }

    def add_dashboard(self, uid: str, title: str, folder_uid: Optional[str] = None,
                      panels: Optional[List[Dict[str, Any]]] = None, version: int = 7):
        self.dashboards[uid] = {
            'dashboard': {
                'id': self._new_id(), 'uid': uid, 'title': title, 'version': version,
                'panels': panels or [{'type': 'graph', 'title': 'requests'}],
                'schemaVersion': 39,
            },
            'folderUid': folder_uid,
            'created': '2024-01-01T00:00:00Z',
            'updated': '2024-02-01T00:00:00Z',
        }

    def add_datasource(self, name: str, uid: Optional[str] = None, type: str = 'prometheus',
                       url: str = 'http://prometheus:9090', secrets: Optional[Dict[str, str]] = None):
        ds_id = self._new_id()
        self.datasources[ds_id] = {
            'id': ds_id, 'uid': uid or f"ds-{ds_id}", 'orgId': 1, 'name': name, 'type': type,
            'url': url, 'access': 'proxy', 'jsonData': {'httpMethod': 'POST'},
            'readOnly': False, 'version': 3, 'basicAuth': False,
        }
        self.secrets[ds_id] = dict(secrets or {})

    def fail(self, method: str, path: str, *outcomes: Any):
        """Serve the given statuses (ints) or exceptions for method+path, then behave normally.

        Pass ``None`` as the only outcome to fail forever with 500.
        """
        self.failures[(method, path)] = list(outcomes)

    # ---------- helpers ----------

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def posts(self, prefix: str) -> List[Any]:
        return [body for method, path, body in self.bodies if method == 'POST' and path.startswith(prefix)]

    def _datasource_view(self, ds: Dict[str, Any]) -> Dict[str, Any]:
        view = dict(ds)
        view['secureJsonFields'] = {key: True for key in self.secrets.get(ds['id'], {})}
        return view

    def _find_datasource(self, field: str, value: str) -> Optional[Dict[str, Any]]:
        for ds in self.datasources.values():
            if ds[field] == value:
                return ds
        return None

    def _injected_failure(self, request: httpx.Request, method: str, path: str) -> Optional[httpx.Response]:
        queue = self.failures.get((method, path))
        if not queue:
            return None
        outcome = queue[0]
        if outcome is None:
            return _json(500, {'message': 'internal error'})
        queue.pop(0)
        if isinstance(outcome, type) and issubclass(outcome, Exception):
            raise outcome("injected failure", request=request)
        return _json(outcome, {'message': f'injected {outcome}'})

    # ---------- routing ----------

    def handle(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = unquote(request.url.path)
        body = None
        if request.content:
            body = httpx.Response(200, content=request.content).json()

        with self._lock:
            self.calls.append((method, path))
            self.bodies.append((method, path, body))

            injected = self._injected_failure(request, method, path)
            if injected is not None:
                return injected

            if request.headers.get('Authorization') != f"Bearer {self.api_key}":
                return _json(401, {'message': 'Unauthorized'})

            return self._route(method, path, dict(request.url.params), body)

    def _route(self, method: str, path: str, params: Dict[str, str], body: Any) -> httpx.Response:
        parts = path.strip('/').split('/')

        if path == '/api/health':
            return _json(200, {'database': 'ok', 'version': '10.4.1'})

        if path == '/api/search' and method == 'GET':
            return self._search(params)

        if parts[:2] == ['api', 'folders']:
            return self._folders(method, parts[2:], body)

        if parts[:2] == ['api', 'dashboards']:
            return self._dashboards(method, parts[2:], body)

        if parts[:2] == ['api', 'datasources']:
            return self._datasources(method, parts[2:], body)

        return _json(404, {'message': 'Not found'})

    def _search(self, params: Dict[str, str]) -> httpx.Response:
        if params.get('type') == 'dash-folder':
            hits = [
                {'id': f['id'], 'uid': f['uid'], 'title': f['title'], 'type': 'dash-folder',
                 **({'folderUid': f['parentUid']} if f['parentUid'] else {})}
                for f in self.folders.values()
            ]
        else:
            hits = [
                {'id': d['dashboard']['id'], 'uid': uid, 'title': d['dashboard']['title'], 'type': 'dash-db',
                 **({'folderUid': d['folderUid']} if d['folderUid'] else {})}
                for uid, d in self.dashboards.items()
            ]
        limit = int(params.get('limit', 1000))
        page = int(params.get('page', 1))
        return _json(200, hits[(page - 1) * limit:page * limit])

    def _folders(self, method: str, rest: List[str], body: Any) -> httpx.Response:
        if not rest and method == 'GET':
            return _json(200, [f for f in self.folders.values() if not f['parentUid']])

        if not rest and method == 'POST':
            parent = body.get('parentUid')
            if parent and parent not in self.folders:
                return _json(400, {'message': 'parent folder not found'})
            uid = body['uid'] + self.folder_uid_suffix
            if uid in self.folders:
                return _json(409, {'message': 'a folder with the same uid already exists'})
            self.add_folder(uid, body['title'], parent)
            return _json(200, self.folders[uid])

        folder = self.folders.get(rest[0]) if rest else None
        if folder is None:
            return _json(404, {'message': 'folder not found'})

        if method == 'GET':
            return _json(200, folder)

        if method == 'PUT':
            if not body.get('overwrite') and body.get('version') != folder['version']:
                return _json(412, {'message': 'version mismatch'})
            folder['title'] = body['title']
            folder['version'] += 1
            return _json(200, folder)

        return _json(405, {'message': 'method not allowed'})

    def _dashboards(self, method: str, rest: List[str], body: Any) -> httpx.Response:
        if rest[:1] == ['uid'] and method == 'GET':
            stored = self.dashboards.get(rest[1])
            if stored is None:
                return _json(404, {'message': 'Dashboard not found'})
            return _json(200, {
                'dashboard': stored['dashboard'],
                'meta': {
                    'folderUid': stored['folderUid'] or '',
                    'version': stored['dashboard']['version'],
                    'created': stored['created'],
                    'updated': stored['updated'],
                },
            })

        if rest == ['db'] and method == 'POST':
            dashboard = dict(body['dashboard'])
            folder_uid = body.get('folderUid')
            if folder_uid and folder_uid not in self.folders:
                return _json(400, {'message': 'folder not found'})
            existing = self.dashboards.get(dashboard['uid'])
            if existing is not None and not body.get('overwrite'):
                return _json(412, {'message': 'dashboard already exists'})
            if dashboard.get('id') is not None:
                return _json(400, {'message': 'id must not be set'})
            dashboard['id'] = existing['dashboard']['id'] if existing else self._new_id()
            dashboard['version'] = existing['dashboard']['version'] + 1 if existing else 1
            self.dashboards[dashboard['uid']] = {
                'dashboard': dashboard, 'folderUid': folder_uid,
                'created': '2024-03-01T00:00:00Z', 'updated': '2024-03-01T00:00:00Z',
            }
            return _json(200, {'id': dashboard['id'], 'uid': dashboard['uid'], 'status': 'success',
                               'version': dashboard['version'], 'url': f"/d/{dashboard['uid']}"})

        return _json(404, {'message': 'Not found'})

    def _datasources(self, method: str, rest: List[str], body: Any) -> httpx.Response:
        if not rest and method == 'GET':
            return _json(200, [self._datasource_view(ds) for ds in self.datasources.values()])

        if len(rest) == 2 and rest[0] in ('uid', 'name') and method == 'GET':
            ds = self._find_datasource(rest[0], rest[1])
            if ds is None:
                return _json(404, {'message': 'Data source not found'})
            return _json(200, self._datasource_view(ds))

        if not rest and method == 'POST':
            if self._find_datasource('name', body['name']):
                return _json(409, {'message': 'data source with the same name already exists'})
            ds_id = self._new_id()
            stored = {k: v for k, v in body.items() if k != 'secureJsonData'}
            stored.update({'id': ds_id, 'orgId': 1, 'version': 1, 'readOnly': False})
            if self.assign_datasource_uids or not stored.get('uid'):
                stored['uid'] = f"ds-{ds_id}"
            self.datasources[ds_id] = stored
            self.secrets[ds_id] = dict(body.get('secureJsonData') or {})
            return _json(200, {'datasource': self._datasource_view(stored), 'id': ds_id,
                               'name': stored['name'], 'message': 'Datasource added'})

        if len(rest) == 1 and method == 'PUT':
            ds = self.datasources.get(int(rest[0]))
            if ds is None:
                return _json(404, {'message': 'Data source not found'})
            for key, value in body.items():
                if key != 'secureJsonData':
                    ds[key] = value
            ds['version'] += 1
            if body.get('secureJsonData'):
                self.secrets[ds['id']] = dict(body['secureJsonData'])
            return _json(200, {'datasource': self._datasource_view(ds), 'id': ds['id'],
                               'name': ds['name'], 'message': 'Datasource updated'})

        return _json(404, {'message': 'Not found'})


CONFIG_ENV_VARS = (
    'CONFIG_FILE', 'LOG_LEVEL', 'LOG_FORMAT', 'MAX_WORKERS', 'RUN_TIMEOUT_SECONDS',
    'API_TIMEOUT_SECONDS', 'API_RATE_LIMIT_PER_SECOND', 'API_RETRY_MAX_ATTEMPTS',
    'API_RETRY_BACKOFF_FACTOR', 'SNAPSHOTS_STORAGE_PATH', 'OUTPUTS_STORAGE_PATH',
    'LOGS_STORAGE_PATH', 'GRAFANA_SRC_HOST', 'GRAFANA_SRC_API_KEY',
    'GRAFANA_DST_HOST', 'GRAFANA_DST_API_KEY',
)


@pytest.fixture(autouse=True)
def clean_env(tmp_path, monkeypatch):
    """Run every test in its own directory, with no migrator settings inherited from the shell."""
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        src={'host': 'http://source.grafana', 'api_key': 'src-token'},
        dst={'host': 'http://destination.grafana', 'api_key': 'dst-token'},
        max_workers=4,
        api_rate_limit_per_second=0,
        api_retry_max_attempts=3,
        api_retry_backoff_factor=0,
        outputs_storage_path=str(tmp_path / 'outputs'),
        logs_storage_path=str(tmp_path / 'logs'),
        snapshots_storage_path=str(tmp_path / 'snapshot'),
    )


@pytest.fixture
def source_grafana() -> FakeGrafana:
    return FakeGrafana(api_key='src-token', id_start=100)


@pytest.fixture
def destination_grafana() -> FakeGrafana:
    return FakeGrafana(api_key='dst-token', id_start=1)


@pytest.fixture
def source(config, source_grafana):
    with ContentClient(config.src, config, 'src', transport=source_grafana.transport()) as client:
        yield client


@pytest.fixture
def destination(config, destination_grafana):
    with ContentClient(config.dst, config, 'dst', transport=destination_grafana.transport()) as client:
        yield client


@pytest.fixture
def make_destination(config):
    """Build a destination instance with non-default behaviour, e.g. a rejected key."""
    clients = []

    def factory(**kwargs):
        kwargs.setdefault('api_key', 'dst-token')
        grafana = FakeGrafana(**kwargs)
        client = ContentClient(config.dst, config, 'dst', transport=grafana.transport())
        clients.append(client)
        return grafana, client

    yield factory

    for client in clients:
        client.close()
