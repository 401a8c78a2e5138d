"""
Permissions Report Service

Builds the roles and permissions workbook:
- Roles Overview: one row per role with active user count, linked to its sheet
- Comparison: permission x role matrix (C/V/U/R/E codes, or Yes for toggles)
- One sheet per role with CRUD columns and indented sub-permissions

Also flattens the same data into one table for CSV / JSON exports.
"""

import logging
import re
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Tuple

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from export_schemas import PermissionFlags, Role, RolePermission, TenantUser
from services.export_format_handler import HYPERLINK_FONT, workbook_bytes, write_cell

# Configure logging
logger = logging.getLogger(__name__)

WORKFLOW = "Workflow"
ACCOUNT_ACCESS = "Account Access"

OVERVIEW_SHEET = "Roles Overview"
COMPARISON_SHEET = "Comparison"
CRUD_HEADER = ["Permission Name", "Category", "Create", "Read", "Update", "Delete", "Export"]

_RESERVED_SHEET_CHARS = re.compile(r"[:\\/\[\]*?]")


def sanitize_sheet_name(name: str) -> str:
    """First 31 characters with : \\ / [ ] * ? replaced by '_'."""
    sanitized = _RESERVED_SHEET_CHARS.sub("_", (name or "")[:31])
    return sanitized or "Role"


def _yes(flag: bool) -> Optional[str]:
    return "Yes" if flag else None


def _coerce(items: Iterable[Any], model):
    return [item if isinstance(item, model) else model.model_validate(item) for item in items]


def _belongs_to(permission: RolePermission, role: Role) -> bool:
    return permission.role_id == role.id or permission.role_name == role.name


def crud_cells(permission: RolePermission) -> List[Optional[str]]:
    """Create/Read/Update/Delete/Export cells; workflow rows only fill Create."""
    flags = permission.permissions
    if permission.category == WORKFLOW:
        return [_yes(flags.enabled), None, None, None, None]
    return [
        _yes(flags.create),
        _yes(flags.can_read),
        _yes(flags.update),
        _yes(flags.can_delete),
        _yes(flags.export),
    ]


def comparison_code(permission: RolePermission) -> Optional[str]:
    """'Yes' for toggle categories, else the C V U R E letters that apply."""
    flags: PermissionFlags = permission.permissions
    if permission.category in (WORKFLOW, ACCOUNT_ACCESS):
        return _yes(flags.enabled)

    code = ""
    if flags.create:
        code += "C"
    if flags.can_read:
        code += "V"
    if flags.update:
        code += "U"
    if flags.can_delete:
        code += "R"
    if flags.export:
        code += "E"
    return code or None


def count_active_users_by_role(users: Iterable[TenantUser]) -> Counter:
    counts: Counter = Counter()
    for user in users:
        if user.is_active and user.role is not None and user.role.id:
            counts[user.role.id] += 1
    return counts


def _sheet_link(title: str) -> str:
    return "#'{}'!A1".format(title.replace("'", "''"))


def _append_rows(ws, rows: List[List[Any]]) -> None:
    for row_idx, values in enumerate(rows, 1):
        for col_idx, value in enumerate(values, 1):
            if value is not None:
                write_cell(ws, row_idx, col_idx, value)


def _set_widths(ws, widths: List[int]) -> None:
    for col_idx, width in enumerate(widths, 1):
        ws.column_dimensions[get_column_letter(col_idx)].width = width


def _build_overview(ws, roles: List[Role], user_counts: Counter) -> None:
    rows: List[List[Any]] = [
        [OVERVIEW_SHEET, "", "", ""],
        ["", "", "", ""],
        ["Role Name", "Description", "External", "Total Users"],
    ]
    for role in roles:
        rows.append([role.name, role.description or "", _yes(role.external), user_counts.get(role.id, 0)])

    _append_rows(ws, rows)
    ws["A1"].font = Font(bold=True, size=14)
    for cell in ws[3]:
        cell.font = Font(bold=True)
    _set_widths(ws, [30, 50, 10, 12])


def _link_overview(ws, roles: List[Role], sheet_titles: List[str]) -> None:
    for index, (role, title) in enumerate(zip(roles, sheet_titles)):
        cell = ws.cell(row=index + 4, column=1)
        cell.value = role.name
        cell.hyperlink = _sheet_link(title)
        cell.hyperlink.tooltip = f"View {role.name} permissions"
        cell.font = HYPERLINK_FONT


def _comparison_permissions(role_permissions: List[RolePermission]) -> List[Tuple[str, str]]:
    """Unique modules (first occurrence wins) sorted by category then name."""
    unique: Dict[str, str] = {}
    for permission in role_permissions:
        unique.setdefault(permission.module or "", permission.category or "")
    return sorted(
        ((name, category) for name, category in unique.items()),
        key=lambda item: (item[1].casefold(), item[1], item[0].casefold(), item[0]),
    )


def _build_comparison(ws, roles: List[Role], role_permissions: List[RolePermission]) -> None:
    rows: List[List[Any]] = [
        ["Permissions Comparison - All Roles"],
        [],
        ["Permission Name", "Category"] + [role.name for role in roles],
    ]

    for name, category in _comparison_permissions(role_permissions):
        row: List[Any] = [name, category]
        for role in roles:
            match = next(
                (p for p in role_permissions if _belongs_to(p, role) and (p.module or "") == name),
                None,
            )
            row.append(comparison_code(match) if match is not None else None)
        rows.append(row)

    _append_rows(ws, rows)
    ws["A1"].font = Font(bold=True, size=14)
    for cell in ws[3]:
        cell.font = Font(bold=True)
    _set_widths(ws, [35, 15] + [12] * len(roles))
    ws.freeze_panes = "C4"


def _build_role_sheet(ws, role: Role, role_permissions: List[RolePermission]) -> None:
    own = [p for p in role_permissions if _belongs_to(p, role)]

    account_access = next(
        (p for p in own if p.category == ACCOUNT_ACCESS and p.permissions.enabled),
        None,
    )

    rows: List[List[Any]] = [
        [role.name],
        ["Description:", role.description or ""],
        ["External:", _yes(role.external)],
        ["Account Access:", account_access.module if account_access is not None else "None"],
        [],
        list(CRUD_HEADER),
    ]

    for permission in own:
        if permission.category == ACCOUNT_ACCESS:
            continue
        rows.append([permission.module or "", permission.category or ""] + crud_cells(permission))
        for sub in permission.sub_permissions:
            rows.append([f"  {sub.module or ''}", sub.category or ""] + crud_cells(sub))

    _append_rows(ws, rows)
    ws["A1"].font = Font(bold=True, size=14)
    for cell in ws[6]:
        cell.font = Font(bold=True)
    _set_widths(ws, [30, 20, 8, 8, 8, 8, 8])


def generate_permissions_workbook(
    roles: List[Any],
    role_permissions: List[Any],
    users: List[Any] = None,
) -> bytes:
    """
    Build the permissions workbook.

    Args:
        roles: Role models or raw role dicts
        role_permissions: RolePermission models or raw dicts
        users: Tenant users, used for the active user count per role

    Returns:
        XLSX bytes with len(roles) + 2 sheets
    """
    roles = _coerce(roles, Role)
    role_permissions = _coerce(role_permissions, RolePermission)
    users = _coerce(users or [], TenantUser)

    logger.debug(
        f"Generating permissions workbook: {len(roles)} roles, "
        f"{len(role_permissions)} permissions, {len(users)} users"
    )

    workbook = Workbook()
    overview = workbook.active
    overview.title = OVERVIEW_SHEET
    _build_overview(overview, roles, count_active_users_by_role(users))

    _build_comparison(workbook.create_sheet(COMPARISON_SHEET), roles, role_permissions)

    sheet_titles: List[str] = []
    for role in roles:
        # openpyxl renames duplicate titles, so links use the final title
        ws = workbook.create_sheet(sanitize_sheet_name(role.name))
        _build_role_sheet(ws, role, role_permissions)
        sheet_titles.append(ws.title)

    _link_overview(overview, roles, sheet_titles)

    logger.debug(f"Permissions workbook generated with {len(workbook.sheetnames)} sheets")
    return workbook_bytes(workbook)


def generate_permissions_flat_data(roles: List[Any], role_permissions: List[Any]) -> List[Dict[str, Any]]:
    """One row per (role, permission), CRUD columns as 'Yes' or None."""
    roles = _coerce(roles, Role)
    role_permissions = _coerce(role_permissions, RolePermission)

    flat: List[Dict[str, Any]] = []
    for role in roles:
        for permission in role_permissions:
            if not _belongs_to(permission, role):
                continue
            create, read, update, delete, export = crud_cells(permission)
            flat.append({
                "Role Name": role.name,
                "Role Description": role.description or "",
                "External": _yes(role.external),
                "Permission Name": permission.module or "",
                "Category": permission.category or "",
                "Create": create,
                "Read": read,
                "Update": update,
                "Delete": delete,
                "Export": export,
            })
    return flat
