from pydantic import BaseModel, Field, validator
from pydantic.json_schema import SkipJsonSchema
from typing import Optional, List, Dict, Any, Callable, Awaitable
from datetime import datetime
from enum import Enum


# --- Enums ---
class ExportFormat(str, Enum):
    """Supported export file formats"""
    CSV = "csv"
    JSON = "json"
    XLSX = "xlsx"


class ExportStatus(str, Enum):
    """Lifecycle states of an export job"""
    PREPARING = "preparing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ExportStatus.COMPLETED, ExportStatus.FAILED, ExportStatus.CANCELLED})


class FieldType(str, Enum):
    """How a mapped field value is rendered into a cell"""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ARRAY = "array"
    OBJECT = "object"
    RICHTEXT = "richtext"
    RATING = "rating"
    USER = "user"
    USERS = "users"


# --- Field mapping and options ---
class FieldMapping(BaseModel):
    """Maps one (possibly nested) record attribute to an output column"""
    key: str = Field(..., description="Dotted path into the record, e.g. 'owner.name'")
    label: str = Field(..., description="Column header written to the export")
    type: FieldType = Field(FieldType.STRING, description="Rendering rule for the value")
    include: bool = Field(True, description="Whether the column is emitted")
    formatter: SkipJsonSchema[Optional[Callable[[Any], Any]]] = Field(None, exclude=True, description="Custom formatter overriding the type rule")
    width: Optional[int] = Field(None, ge=1, description="Column width hint for spreadsheet output")

    @validator("key")
    def validate_key(cls, v):
        """Reject empty paths and empty path segments"""
        if not v or not v.strip():
            raise ValueError("key cannot be empty")
        if any(part == "" for part in v.split(".")):
            raise ValueError(f"Invalid key path '{v}'")
        return v


class ExportOptions(BaseModel):
    """Formatting options shared by all encoders"""
    include_headers: bool = Field(True, description="Write a header row (CSV)")
    date_format: str = Field("yyyy-MM-dd", description="Date pattern for date fields")
    timezone: str = Field("UTC", description="IANA timezone used for date fields")
    locale: str = Field("en_US", description="Locale used for date fields")
    include_custom_fields: bool = Field(False, description="Caller hint: include tenant custom fields")
    include_related_data: bool = Field(False, description="Caller hint: include related records")

    class Config:
        extra = "allow"


# --- Requests ---
class ExportRequest(BaseModel):
    """Bulk export: the whole dataset is already in memory"""
    data: List[Dict[str, Any]] = Field(default_factory=list, description="Records to export")
    format: str = Field(..., description="Export format: csv, json or xlsx")
    filename: str = Field(..., description="Download filename")
    fields: List[FieldMapping] = Field(default_factory=list, description="Field mappings in column order")
    options: ExportOptions = Field(default_factory=ExportOptions)
    entity_type: Optional[str] = Field(None, description="Kind of records being exported (issues, users, ...)")

    @validator("format")
    def normalize_format(cls, v):
        """Formats are matched case-insensitively; unknown ones fail the job later"""
        return v.strip().lower()

    @validator("filename")
    def validate_filename(cls, v):
        if not v or not v.strip():
            raise ValueError("filename cannot be empty")
        return v.strip()

    class Config:
        json_schema_extra = {
            "example": {
                "data": [{"title": "Broken login", "owner": {"name": "Ada"}, "closed": False}],
                "format": "csv",
                "filename": "issues.csv",
                "fields": [
                    {"key": "title", "label": "Title", "type": "string"},
                    {"key": "owner", "label": "Owner", "type": "user"},
                    {"key": "closed", "label": "Closed", "type": "boolean"}
                ],
                "options": {"include_headers": True, "timezone": "UTC"},
                "entity_type": "issues"
            }
        }


class StreamingExportRequest(BaseModel):
    """Streaming export: records are fetched page by page from a data provider"""
    data_provider: Callable[[int, int], Awaitable[Any]] = Field(..., description="async (offset, limit) -> {data, total}")
    total_records: Optional[int] = Field(None, ge=0, description="Known total; probed when omitted")
    format: str = Field(..., description="Export format: csv, json or xlsx")
    filename: str = Field(..., description="Download filename")
    fields: List[FieldMapping] = Field(default_factory=list)
    options: ExportOptions = Field(default_factory=ExportOptions)
    entity_type: Optional[str] = None

    @validator("format")
    def normalize_format(cls, v):
        return v.strip().lower()


class Page(BaseModel):
    """One page returned by a data provider"""
    data: List[Any] = Field(default_factory=list)
    total: int = Field(0, ge=0)


class WorkbookProperties(BaseModel):
    title: Optional[str] = None
    subject: Optional[str] = None
    creator: Optional[str] = None
    description: Optional[str] = None


class SheetRequest(BaseModel):
    """One named sheet of a multi-sheet workbook"""
    name: str = Field(..., description="Sheet name; sanitized before use")
    data: List[Dict[str, Any]] = Field(default_factory=list)
    fields: List[FieldMapping] = Field(default_factory=list)
    options: Optional[ExportOptions] = Field(None, description="Overrides the workbook level options")


class MultiSheetExportRequest(BaseModel):
    sheets: List[SheetRequest] = Field(..., min_length=1)
    filename: str
    options: ExportOptions = Field(default_factory=ExportOptions)
    include_summary: bool = Field(True, description="Add a Summary sheet linking to every data sheet")
    properties: WorkbookProperties = Field(default_factory=WorkbookProperties)


# --- Job progress ---
class ExportProgress(BaseModel):
    """Observable state of one export job"""
    job_id: str = Field(..., description="Unique identifier for the export job")
    status: ExportStatus = Field(..., description="Current job status")
    progress: int = Field(0, ge=0, le=100, description="Progress percentage (0-100)")
    total_records: int = Field(0, ge=0, description="Total number of records to export")
    processed_records: int = Field(0, ge=0, description="Number of records processed so far")
    estimated_time_remaining: Optional[float] = Field(None, description="Estimated seconds until completion")
    error: Optional[str] = Field(None, description="Error message if the job failed")
    download_url: Optional[str] = Field(None, description="Object URL of the payload once completed")
    start_time: float = Field(..., description="Job creation time (epoch seconds)")

    class Config:
        json_schema_extra = {
            "example": {
                "job_id": "export-1731752415000-a1b2c3",
                "status": "processing",
                "progress": 45,
                "total_records": 15000,
                "processed_records": 6750,
                "estimated_time_remaining": 12.5,
                "error": None,
                "download_url": None,
                "start_time": 1731752415.0
            }
        }


# --- Permissions domain ---
class PermissionFlags(BaseModel):
    """CRUD style flags; view and remove are legacy aliases of read and delete"""
    create: bool = False
    read: bool = False
    view: bool = False
    update: bool = False
    delete: bool = False
    remove: bool = False
    export: bool = False
    enabled: bool = False

    @property
    def can_read(self) -> bool:
        return self.read or self.view

    @property
    def can_delete(self) -> bool:
        return self.delete or self.remove

    class Config:
        extra = "ignore"


class Role(BaseModel):
    id: str = Field(..., alias="_id")
    name: str
    description: Optional[str] = None
    external: bool = False

    class Config:
        populate_by_name = True
        extra = "ignore"


class RolePermission(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    role_id: Optional[str] = Field(None, alias="roleId")
    role_name: Optional[str] = Field(None, alias="roleName")
    module: str = ""
    category: Optional[str] = None
    permissions: PermissionFlags = Field(default_factory=PermissionFlags)
    sub_permissions: List["RolePermission"] = Field(default_factory=list, alias="subPermissions")

    @validator("permissions", pre=True)
    def default_permissions(cls, v):
        return v or {}

    @validator("sub_permissions", pre=True)
    def default_sub_permissions(cls, v):
        return v or []

    class Config:
        populate_by_name = True
        extra = "ignore"


class UserRoleRef(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    name: Optional[str] = None

    class Config:
        populate_by_name = True
        extra = "ignore"


class TenantUser(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    email: Optional[str] = None
    name: Optional[str] = None
    is_active: bool = Field(False, alias="isActive")
    role: Optional[UserRoleRef] = None

    class Config:
        populate_by_name = True
        extra = "ignore"


class PermissionsExportRequest(BaseModel):
    roles: List[Role]
    role_permissions: List[RolePermission] = Field(default_factory=list)
    users: List[TenantUser] = Field(default_factory=list)
    filename: str = "permissions.xlsx"


# --- API responses ---
class ExportJobResponse(BaseModel):
    """Response returned when an export job is accepted"""
    job_id: str = Field(..., description="Unique identifier for the export job")
    status: ExportStatus = Field(..., description="Job status at acceptance time")
    message: str = Field(..., description="Human readable message")

    class Config:
        json_schema_extra = {
            "example": {
                "job_id": "export-1731752415000-a1b2c3",
                "status": "preparing",
                "message": "Export job started. Poll the job status and download when complete."
            }
        }


class ExportJobListResponse(BaseModel):
    jobs: List[ExportProgress]
    total: int


class ExportCancelResponse(BaseModel):
    job_id: str
    cancelled: bool


class APIError(BaseModel):
    error: bool = True
    message: str
    details: Optional[Dict[str, Any]] = None
    error_code: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


RolePermission.model_rebuild()
