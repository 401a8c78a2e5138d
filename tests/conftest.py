"""
Pytest configuration and fixtures for export pipeline tests
"""

import pytest
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from export_config import ExportConfig
from export_schemas import FieldMapping, FieldType
from services.export_engine import ExportEngine
from services.export_format_handler import ExportFormatHandler
from services.export_job_orchestrator import ExportJobOrchestrator
from utils.export_file_storage import ExportFileStorage


@pytest.fixture(scope="function")
def export_config():
    """Config with the production defaults and no download directory"""
    return ExportConfig(download_dir=None)


@pytest.fixture(scope="function")
def orchestrator():
    return ExportJobOrchestrator(history_size=10)


@pytest.fixture(scope="function")
def storage():
    return ExportFileStorage()


@pytest.fixture(scope="function")
def downloads():
    """Collects every payload handed to the download trigger"""
    return []


@pytest.fixture(scope="function")
def make_engine(orchestrator, storage, downloads):
    """Factory building an ExportEngine around the shared fixtures"""

    def _make(config: ExportConfig = None, memory_estimator=None) -> ExportEngine:
        return ExportEngine(
            orchestrator=orchestrator,
            format_handler=ExportFormatHandler(),
            storage=storage,
            config=config or ExportConfig(download_dir=None),
            download_trigger=downloads.append,
            memory_estimator=memory_estimator,
        )

    return _make


@pytest.fixture(scope="function")
def engine(make_engine):
    return make_engine()


@pytest.fixture(scope="function")
def issue_fields():
    return [
        FieldMapping(key="title", label="Title", type=FieldType.STRING),
        FieldMapping(key="points", label="Points", type=FieldType.NUMBER),
        FieldMapping(key="closed", label="Closed", type=FieldType.BOOLEAN),
        FieldMapping(key="owner", label="Owner", type=FieldType.USER),
        FieldMapping(key="internal", label="Internal", type=FieldType.STRING, include=False),
    ]


@pytest.fixture(scope="function")
def issue_records():
    return [
        {"title": "Broken login", "points": 3, "closed": True, "owner": {"name": "Ada"}, "internal": "x"},
        {"title": "Slow, very slow", "points": 5, "closed": False, "owner": {"email": "bob@example.com"}},
        {"title": "Quote \"here\"", "points": None, "closed": True, "owner": "carol"},
    ]


@pytest.fixture(scope="function")
def make_provider():
    """Factory for async data providers over an in-memory list, recording (offset, limit) calls"""

    def _make(records, calls=None):
        async def provider(offset: int, limit: int):
            if calls is not None:
                calls.append((offset, limit))
            return {"data": records[offset:offset + limit], "total": len(records)}

        return provider

    return _make


@pytest.fixture(scope="function")
def permissions_data():
    """Two roles, one with a sub-permission and an Account Access choice"""
    roles = [
        {"_id": "r1", "name": "Admin", "description": "Full access", "external": False},
        {"_id": "r2", "name": "Partner: External [Read]", "description": None, "external": True},
    ]
    role_permissions = [
        {
            "_id": "p1", "roleId": "r1", "roleName": "Admin", "module": "Companies", "category": "Model",
            "permissions": {"create": True, "view": True, "update": True, "remove": True, "export": True},
            "subPermissions": [
                {"_id": "p1a", "roleId": "r1", "module": "Company Notes", "category": "Model",
                 "permissions": {"read": True}},
            ],
        },
        {"_id": "p2", "roleId": "r1", "roleName": "Admin", "module": "Run Workflows", "category": "Workflow",
         "permissions": {"enabled": True}},
        {"_id": "p3", "roleId": "r1", "roleName": "Admin", "module": "All Accounts", "category": "Account Access",
         "permissions": {"enabled": True}},
        {"_id": "p4", "roleId": "r2", "roleName": "Partner: External [Read]", "module": "Companies",
         "category": "Model", "permissions": {"read": True}},
        {"_id": "p5", "roleName": "Partner: External [Read]", "module": "Run Workflows", "category": "Workflow",
         "permissions": {"enabled": False}},
    ]
    users = [
        {"_id": "u1", "isActive": True, "role": {"_id": "r1"}},
        {"_id": "u2", "isActive": True, "role": {"_id": "r1"}},
        {"_id": "u3", "isActive": False, "role": {"_id": "r1"}},
        {"_id": "u4", "isActive": True, "role": {"_id": "r2"}},
        {"_id": "u5", "isActive": True},
    ]
    return roles, role_permissions, users
