from __future__ import annotations

from functools import lru_cache
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Sequence

from app.filters.types import FieldDefinition, FieldType, Operator


O = Operator

TEXT_OPERATORS = (O.EQ, O.NEQ, O.CONTAINS, O.STARTS_WITH, O.ENDS_WITH, O.IS_NULL, O.IS_NOT_NULL)
NUMBER_OPERATORS = (
    O.EQ, O.NEQ, O.GT, O.GTE, O.LT, O.LTE, O.IN, O.NOT_IN, O.IS_NULL, O.IS_NOT_NULL,
)
DATE_OPERATORS = (O.EQ, O.NEQ, O.GT, O.GTE, O.LT, O.LTE, O.IS_NULL, O.IS_NOT_NULL)
BOOLEAN_OPERATORS = (O.EQ, O.NEQ, O.IS_NULL, O.IS_NOT_NULL)
ENUM_OPERATORS = (O.EQ, O.NEQ, O.IN, O.NOT_IN, O.IS_NULL, O.IS_NOT_NULL)
ID_OPERATORS = (O.EQ, O.NEQ, O.IN, O.NOT_IN, O.IS_NULL, O.IS_NOT_NULL)
PRIMARY_KEY_OPERATORS = (O.EQ, O.NEQ, O.CONTAINS, O.IN, O.NOT_IN)

APPLICATION_STATUSES = (
    "DRAFT",
    "SUBMITTED",
    "OFFER_GENERATED",
    "OFFER_SENT",
    "ACCEPTED",
    "REJECTED",
    "APPROVED",
    "ARCHIVED",
)


class DomainFieldMap:
    """Read-only registry of filterable fields keyed by id and grouped by root table."""

    def __init__(self, fields: Iterable[FieldDefinition]):
        by_id: dict[str, FieldDefinition] = {}
        by_table: dict[str, list[FieldDefinition]] = {}
        for definition in fields:
            if definition.id in by_id:
                raise ValueError(f"Duplicate field id '{definition.id}'")
            if not definition.operators:
                raise ValueError(f"Field '{definition.id}' has no operators")
            if definition.options is not None and definition.type is not FieldType.ENUM:
                raise ValueError(f"Field '{definition.id}' declares options but is not an enum")
            by_id[definition.id] = definition
            by_table.setdefault(definition.root_table, []).append(definition)
        self._by_id: Mapping[str, FieldDefinition] = MappingProxyType(by_id)
        self._by_table: Mapping[str, tuple[FieldDefinition, ...]] = MappingProxyType(
            {table: tuple(items) for table, items in by_table.items()}
        )

    def get_fields_for_table(self, root_table: str) -> list[FieldDefinition]:
        return list(self._by_table.get(root_table, ()))

    def get_field_definition(self, field_id: str) -> Optional[FieldDefinition]:
        return self._by_id.get(field_id)

    def get_root_tables(self) -> list[str]:
        return sorted(self._by_table)

    def __contains__(self, field_id: object) -> bool:
        return field_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)


def _field(
    field_id: str,
    root_table: str,
    db_path: str,
    label: str,
    field_type: FieldType,
    operators: Sequence[Operator],
    *,
    options: Optional[Sequence[str]] = None,
    relation_path: Sequence[str] = (),
    nullable: bool = False,
) -> FieldDefinition:
    return FieldDefinition(
        id=field_id,
        root_table=root_table,
        db_path=db_path,
        label=label,
        type=field_type,
        operators=tuple(operators),
        options=tuple(options) if options is not None else None,
        relation_path=tuple(relation_path),
        nullable=nullable,
    )


def _student_fields() -> list[FieldDefinition]:
    t = "students"
    return [
        _field("student_id", t, "id", "Student ID", FieldType.TEXT, PRIMARY_KEY_OPERATORS),
        _field("student_display_id", t, "student_id_display", "Student Display ID", FieldType.TEXT, TEXT_OPERATORS),
        _field("student_first_name", t, "first_name", "First Name", FieldType.TEXT, TEXT_OPERATORS),
        _field("student_last_name", t, "last_name", "Last Name", FieldType.TEXT, TEXT_OPERATORS),
        _field("student_email", t, "email", "Email", FieldType.TEXT, TEXT_OPERATORS),
        _field(
            "student_status", t, "status", "Status", FieldType.ENUM, ENUM_OPERATORS,
            options=("ACTIVE", "INACTIVE", "COMPLETED", "WITHDRAWN"),
        ),
        _field("student_date_of_birth", t, "date_of_birth", "Date of Birth", FieldType.DATE, DATE_OPERATORS),
        _field("student_created_at", t, "created_at", "Created At", FieldType.DATE, DATE_OPERATORS),
        _field(
            "student_mobile_phone", t, "mobile_phone", "Mobile Phone", FieldType.TEXT, TEXT_OPERATORS,
            nullable=True,
        ),
        _field(
            "application_id", t, "applications.id", "Application ID", FieldType.TEXT, ID_OPERATORS,
            relation_path=("applications",),
        ),
        _field(
            "application_status", t, "applications.status", "Application Status", FieldType.ENUM,
            ENUM_OPERATORS, options=APPLICATION_STATUSES, relation_path=("applications",),
        ),
        _field(
            "application_created_at", t, "applications.created_at", "Application Created At",
            FieldType.DATE, DATE_OPERATORS, relation_path=("applications",),
        ),
        _field(
            "agent_id", t, "applications.agents.id", "Agent ID", FieldType.TEXT, ID_OPERATORS,
            relation_path=("applications", "agents"),
        ),
        _field(
            "agent_name", t, "applications.agents.name", "Agent Name", FieldType.TEXT, TEXT_OPERATORS,
            relation_path=("applications", "agents"),
        ),
        _field(
            "enrollment_id", t, "enrollments.id", "Enrollment ID", FieldType.TEXT, ID_OPERATORS,
            relation_path=("enrollments",),
        ),
        _field(
            "enrollment_status", t, "enrollments.status", "Enrollment Status", FieldType.ENUM,
            ENUM_OPERATORS, options=("PENDING", "ACTIVE", "COMPLETED", "WITHDRAWN", "DEFERRED"),
            relation_path=("enrollments",),
        ),
        _field(
            "enrollment_commencement_date", t, "enrollments.commencement_date",
            "Enrollment Commencement Date", FieldType.DATE, DATE_OPERATORS,
            relation_path=("enrollments",),
        ),
        _field(
            "enrollment_expected_completion_date", t, "enrollments.expected_completion_date",
            "Expected Completion Date", FieldType.DATE, DATE_OPERATORS,
            relation_path=("enrollments",), nullable=True,
        ),
        _field(
            "program_id", t, "enrollments.programs.id", "Program ID", FieldType.TEXT, ID_OPERATORS,
            relation_path=("enrollments", "programs"),
        ),
        _field(
            "program_name", t, "enrollments.programs.name", "Program Name", FieldType.TEXT,
            TEXT_OPERATORS, relation_path=("enrollments", "programs"),
        ),
        _field(
            "program_code", t, "enrollments.programs.code", "Program Code", FieldType.TEXT,
            TEXT_OPERATORS, relation_path=("enrollments", "programs"),
        ),
    ]


def _application_fields() -> list[FieldDefinition]:
    t = "applications"
    return [
        _field(
            "application_display_id", t, "application_id_display", "Application Display ID",
            FieldType.TEXT, TEXT_OPERATORS,
        ),
        _field("application_first_name", t, "first_name", "First Name", FieldType.TEXT, TEXT_OPERATORS, nullable=True),
        _field("application_last_name", t, "last_name", "Last Name", FieldType.TEXT, TEXT_OPERATORS, nullable=True),
        _field("application_email", t, "email", "Email", FieldType.TEXT, TEXT_OPERATORS, nullable=True),
        _field(
            "application_status_direct", t, "status", "Status", FieldType.ENUM, ENUM_OPERATORS,
            options=APPLICATION_STATUSES,
        ),
        _field(
            "application_is_international", t, "is_international", "Is International",
            FieldType.BOOLEAN, BOOLEAN_OPERATORS, nullable=True,
        ),
        _field("application_created_at_direct", t, "created_at", "Created At", FieldType.DATE, DATE_OPERATORS),
        _field("application_updated_at", t, "updated_at", "Updated At", FieldType.DATE, DATE_OPERATORS, nullable=True),
        _field(
            "application_offer_generated_at", t, "offer_generated_at", "Offer Generated At",
            FieldType.DATE, DATE_OPERATORS, nullable=True,
        ),
        _field(
            "application_requested_start_date", t, "requested_start_date", "Requested Start Date",
            FieldType.DATE, DATE_OPERATORS, nullable=True,
        ),
        _field(
            "application_agent_id", t, "agents.id", "Agent ID", FieldType.TEXT, ID_OPERATORS,
            relation_path=("agents",),
        ),
        _field(
            "application_agent_name", t, "agents.name", "Agent Name", FieldType.TEXT, TEXT_OPERATORS,
            relation_path=("agents",),
        ),
        _field(
            "application_program_id", t, "programs.id", "Program ID", FieldType.TEXT, ID_OPERATORS,
            relation_path=("programs",),
        ),
        _field(
            "application_program_name", t, "programs.name", "Program Name", FieldType.TEXT,
            TEXT_OPERATORS, relation_path=("programs",),
        ),
        _field(
            "application_program_code", t, "programs.code", "Program Code", FieldType.TEXT,
            TEXT_OPERATORS, relation_path=("programs",),
        ),
    ]


def _invoice_fields() -> list[FieldDefinition]:
    t = "invoices"
    return [
        _field("invoice_id", t, "id", "Invoice ID", FieldType.TEXT, PRIMARY_KEY_OPERATORS),
        _field("invoice_number", t, "invoice_number", "Invoice Number", FieldType.TEXT, TEXT_OPERATORS),
        _field(
            "invoice_status", t, "status", "Invoice Status", FieldType.ENUM, ENUM_OPERATORS,
            options=("DRAFT", "SENT", "PAID", "OVERDUE", "CANCELLED"),
        ),
        _field("invoice_issue_date", t, "issue_date", "Issue Date", FieldType.DATE, DATE_OPERATORS),
        _field("invoice_due_date", t, "due_date", "Due Date", FieldType.DATE, DATE_OPERATORS),
        _field("invoice_amount_due", t, "amount_due_cents", "Amount Due (cents)", FieldType.NUMBER, NUMBER_OPERATORS),
        _field(
            "invoice_amount_paid", t, "amount_paid_cents", "Amount Paid (cents)", FieldType.NUMBER,
            NUMBER_OPERATORS, nullable=True,
        ),
        # null means no PDF has been generated
        _field(
            "invoice_has_pdf", t, "pdf_path", "Has PDF", FieldType.BOOLEAN, (O.IS_NULL, O.IS_NOT_NULL),
            nullable=True,
        ),
        _field(
            "invoice_last_email_sent_at", t, "last_email_sent_at", "Last Email Sent At",
            FieldType.DATE, DATE_OPERATORS, nullable=True,
        ),
        _field(
            "invoice_program_id", t, "enrollments.programs.id", "Program ID", FieldType.TEXT,
            ID_OPERATORS, relation_path=("enrollments", "programs"),
        ),
        _field(
            "invoice_program_name", t, "enrollments.programs.name", "Program Name", FieldType.TEXT,
            TEXT_OPERATORS, relation_path=("enrollments", "programs"),
        ),
        _field(
            "invoice_program_code", t, "enrollments.programs.code", "Program Code", FieldType.TEXT,
            TEXT_OPERATORS, relation_path=("enrollments", "programs"),
        ),
        _field(
            "invoice_student_id", t, "enrollments.students.id", "Student ID", FieldType.TEXT,
            ID_OPERATORS, relation_path=("enrollments", "students"),
        ),
        _field(
            "invoice_student_name", t, "enrollments.students.first_name", "Student Name",
            FieldType.TEXT, TEXT_OPERATORS, relation_path=("enrollments", "students"),
        ),
    ]


@lru_cache(maxsize=1)
def default_field_map() -> DomainFieldMap:
    return DomainFieldMap([*_student_fields(), *_application_fields(), *_invoice_fields()])


def get_field_map() -> DomainFieldMap:
    return default_field_map()
