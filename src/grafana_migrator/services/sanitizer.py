"""
Strip instance-assigned metadata so entities can be re-created on another instance.

Titles, dashboard JSON, datasource type and url are content and pass through
untouched. None of these functions mutate their input.
"""

import copy
from typing import Dict, Optional, Union

from grafana_migrator.core.models import Dashboard, Datasource, Folder, normalize_folder_uid


class _Keep:
    def __repr__(self):
        return "KEEP"


# Passed as an override to leave the entity's current reference in place
KEEP = _Keep()

# Assigned by the instance: never portable
INSTANCE_FIELDS = {'id', 'version', 'created', 'updated'}
DASHBOARD_PAYLOAD_FIELDS = {'id', 'version'}
DATASOURCE_FIELDS = INSTANCE_FIELDS | {'orgId', 'readOnly', 'secureJsonFields', 'secureJsonData',
                                       'typeLogoUrl'}


def sanitize_folder(folder: Folder, parent_uid_override: Union[Optional[str], _Keep] = KEEP) -> Folder:
    """Drop id/version/timestamps and optionally rewrite the parent reference."""
    data = folder.model_dump(exclude=INSTANCE_FIELDS)
    if parent_uid_override is not KEEP:
        data['parent_uid'] = normalize_folder_uid(parent_uid_override)
    return Folder.model_validate(data)


def sanitize_dashboard(dashboard: Dashboard, folder_uid_override: Union[Optional[str], _Keep]) -> Dashboard:
    """
    Drop instance metadata from the dashboard and its JSON payload.

    ``folder_uid_override`` is the destination folder uid resolved for this
    dashboard, or None to place it at root level when the source folder has
    no destination counterpart.
    """
    data = dashboard.model_dump(exclude=INSTANCE_FIELDS)

    payload = copy.deepcopy(dashboard.payload)
    for field in DASHBOARD_PAYLOAD_FIELDS:
        payload.pop(field, None)
    if payload:
        payload['uid'] = dashboard.uid
        payload.setdefault('title', dashboard.title)
    data['payload'] = payload

    if folder_uid_override is not KEEP:
        data['folder_uid'] = normalize_folder_uid(folder_uid_override)

    return Dashboard.model_validate(data)


def sanitize_datasource(datasource: Datasource, secure_json_data: Optional[Dict[str, str]] = None) -> Datasource:
    """
    Drop instance metadata and read-only flags from a datasource.

    Secrets are never returned by the source API, so ``secureJsonData`` is only
    sent when the operator configured it for this datasource.
    """
    data = datasource.model_dump(by_alias=True)
    for field in DATASOURCE_FIELDS:
        data.pop(field, None)

    # Flags only; the upsert leaves them out of the request body
    if datasource.secure_fields:
        data['secureJsonFields'] = {field: True for field in datasource.secure_fields}
    if secure_json_data:
        data['secureJsonData'] = dict(secure_json_data)

    return Datasource.model_validate(data)
