"""Per-form-type static configuration.

Each form type has a FormDefinition bundling:

- the JSON Schema of its fields,
- its attachment slot definitions,
- its FieldEditabilityTable.

The registry is built once at import time and is read-only afterwards.
Size and count limits follow the limits the portal's forms enforce today;
they differ between forms on purpose (R1 accepts 25 MB files, UG signatures
2 MB) and are kept as data here rather than one shared policy.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from grantflow.errors import MalformedRequestError
from grantflow.permissions import FieldEditabilityTable, PermissionEngine
from grantflow.slots import IMAGE_TYPES, PDF_TYPES, ZIP_TYPES, SlotDefinition, slot
from grantflow.types import ApplicationStatus, FormType, Role
from grantflow.validation import FieldValidator

PENDING = ApplicationStatus.PENDING
UNDER_REVIEW = ApplicationStatus.UNDER_REVIEW

# Names reviewers may write, by role and status. Intersected with the names
# each form declares, so a grant for a field a form lacks is inert.
REVIEWER_GRANTS: Dict[Tuple[Role, ApplicationStatus], Tuple[str, ...]] = {
    (Role.GUIDE, PENDING): ("guideSignature",),
    (Role.GUIDE, UNDER_REVIEW): ("guideSignature",),
    (Role.HOD, PENDING): ("hodSignature", "amountRecommended"),
    (Role.HOD, UNDER_REVIEW): ("hodSignature", "amountRecommended"),
    (Role.DEPARTMENT_COORDINATOR, UNDER_REVIEW): (
        "amountSanctioned", "finalAmount", "comments", "date",
    ),
    (Role.INSTITUTE_COORDINATOR, UNDER_REVIEW): (
        "amountSanctioned", "finalAmount", "comments", "date",
    ),
    (Role.PRINCIPAL, UNDER_REVIEW): (
        "finalAmount", "sdcChairpersonSignature", "sdcChairpersonDate",
    ),
}


@dataclass(frozen=True)
class FormDefinition:
    """Static configuration of one form type.

    Attributes:
        form_type: The form type
        schema: JSON Schema of the form's fields
        slots: Attachment slot definitions, keyed by slot name
        table: Who may write which field/slot in which status
    """
    form_type: FormType
    schema: Dict[str, Any]
    slots: Dict[str, SlotDefinition]
    table: FieldEditabilityTable
    validator: FieldValidator = field(init=False, repr=False, compare=False)
    permissions: PermissionEngine = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        overlap = set(self.field_names) & set(self.slots)
        if overlap:
            raise ValueError(f"{self.form_type.value}: names used as field and slot: {overlap}")
        object.__setattr__(self, "validator", FieldValidator(self.schema))
        object.__setattr__(
            self,
            "permissions",
            PermissionEngine(self.table, known_names=set(self.field_names) | set(self.slots)),
        )

    @property
    def field_names(self) -> List[str]:
        return list(self.schema.get("properties", {}))

    def slot(self, name: str) -> Optional[SlotDefinition]:
        return self.slots.get(name)

    def exclusivity_siblings(self, slot_name: str) -> List[str]:
        """Other slots of this form in the same exclusivity group."""
        definition = self.slots.get(slot_name)
        if definition is None or definition.exclusivity_group is None:
            return []
        return [
            other.name
            for other in self.slots.values()
            if other.name != slot_name
            and other.exclusivity_group == definition.exclusivity_group
        ]

    def incomplete_slots(self, attachments: Mapping[str, List[Any]]) -> List[str]:
        """Slots whose committed file count is outside their cardinality."""
        problems = []
        for definition in self.slots.values():
            count = len(attachments.get(definition.name, []))
            if count < definition.min_count or count > definition.max_count:
                problems.append(definition.name)
        return problems


# Schema building blocks

def _text(**extra) -> Dict[str, Any]:
    return {"type": "string", **extra}


def _number(**extra) -> Dict[str, Any]:
    return {"type": "number", "minimum": 0, **extra}


def _date() -> Dict[str, Any]:
    return {"type": "string", "format": "date"}


def _yes_no() -> Dict[str, Any]:
    return {"type": "string", "enum": ["Yes", "No"]}


def _object(required: Iterable[str], **properties) -> Dict[str, Any]:
    return {"type": "object", "properties": properties, "required": list(required)}


def _list_of(item: Dict[str, Any], min_items: int = 0, **extra) -> Dict[str, Any]:
    return {"type": "array", "items": item, "minItems": min_items, **extra}


BANK_DETAILS = _object(
    ["beneficiary", "ifsc", "bankName", "branch", "accountType", "accountNumber"],
    beneficiary=_text(),
    ifsc=_text(),
    bankName=_text(),
    branch=_text(),
    accountType=_text(),
    accountNumber=_text(),
)

GUIDE = _object(["name", "employeeCode"], name=_text(), employeeCode=_text())


def _schema(required: Iterable[str], **properties) -> Dict[str, Any]:
    return {"type": "object", "properties": properties, "required": list(required)}


def _table(
    student_names: Iterable[str],
    declared: Iterable[str],
) -> FieldEditabilityTable:
    declared = set(declared)
    grants: Dict[Tuple[Role, ApplicationStatus], Iterable[str]] = {
        (Role.STUDENT, PENDING): set(student_names),
    }
    for key, names in REVIEWER_GRANTS.items():
        granted = declared.intersection(names)
        if granted:
            grants[key] = granted
    return FieldEditabilityTable(grants)


def _form(
    form_type: FormType,
    schema: Dict[str, Any],
    slots: List[SlotDefinition],
    reviewer_fields: Iterable[str] = (),
    reviewer_slots: Iterable[str] = (),
) -> FormDefinition:
    reviewer_only = set(reviewer_fields) | set(reviewer_slots)
    declared = set(schema["properties"]) | {s.name for s in slots}
    student_names = declared - reviewer_only
    return FormDefinition(
        form_type=form_type,
        schema=schema,
        slots={s.name: s for s in slots},
        table=_table(student_names, declared),
    )


SIGNATURE_TYPES = IMAGE_TYPES | PDF_TYPES
DOCUMENT_TYPES = PDF_TYPES | IMAGE_TYPES


UG1 = _form(
    FormType.UG1,
    _schema(
        ["svvNetId", "projectTitle"],
        svvNetId=_text(minLength=1),
        projectTitle=_text(minLength=1),
        projectUtility=_text(),
        projectDescription=_text(),
        finance=_text(),
        amountClaimed=_number(),
        studentDetails=_list_of(_object(
            ["studentName", "rollNumber"],
            srNo=_text(),
            branch=_text(),
            yearOfStudy=_text(),
            studentName=_text(),
            rollNumber=_text(),
        )),
        guides=_list_of(GUIDE),
    ),
    [
        slot("pdfFiles", PDF_TYPES, max_mb=5, max_count=5, group="supportingDocuments"),
        slot("zipFile", ZIP_TYPES, max_mb=25, group="supportingDocuments"),
        slot("groupLeaderSignature", SIGNATURE_TYPES, max_mb=2, required=True),
        slot("guideSignature", SIGNATURE_TYPES, max_mb=2, required=True),
    ],
)

UG2 = _form(
    FormType.UG2,
    _schema(
        ["svvNetId", "projectTitle", "projectDescription", "utility", "receivedFinance",
         "guideDetails", "students", "expenses", "totalBudget"],
        svvNetId=_text(minLength=1),
        projectTitle=_text(minLength=1),
        projectDescription=_text(),
        utility=_text(),
        receivedFinance={"type": "boolean"},
        financeDetails=_text(),
        guideDetails=_list_of(GUIDE, min_items=1),
        students=_list_of(_object(
            ["name", "year", "branch", "rollNo"],
            name=_text(),
            year=_text(),
            branch=_text(),
            rollNo=_text(),
            mobileNo=_text(),
        ), min_items=1),
        expenses=_list_of(_object(
            ["category", "amount"],
            category=_text(),
            amount=_number(),
            details=_text(),
        ), min_items=1),
        totalBudget=_number(),
    ),
    [
        slot("groupLeaderSignature", SIGNATURE_TYPES, max_mb=5, required=True),
        slot("guideSignature", SIGNATURE_TYPES, max_mb=5, required=True),
        slot("uploadedFiles", PDF_TYPES, max_mb=5, max_count=5, group="supportingDocuments"),
        slot("zipFile", ZIP_TYPES, max_mb=25, group="supportingDocuments"),
    ],
)

UG3A = _form(
    FormType.UG3A,
    _schema(
        ["svvNetId", "organizingInstitute", "projectTitle", "students", "expenses",
         "bankDetails", "totalAmount"],
        svvNetId=_text(minLength=1),
        organizingInstitute=_text(minLength=1),
        projectTitle=_text(minLength=1),
        students=_list_of(_object(
            ["name", "branch", "rollNo"],
            name=_text(),
            branch=_text(),
            rollNo=_text(),
            mobileNo=_text(),
        ), min_items=1),
        expenses=_list_of(_object(
            ["description", "amount"],
            description=_text(),
            amount=_number(exclusiveMinimum=0),
        ), min_items=1),
        bankDetails=BANK_DETAILS,
        totalAmount=_number(),
    ),
    [
        slot("uploadedImage", IMAGE_TYPES, max_mb=2),
        slot("uploadedPdfs", PDF_TYPES, max_mb=5, max_count=5, group="supportingDocuments"),
        slot("uploadedZipFile", ZIP_TYPES, max_mb=20, group="supportingDocuments"),
    ],
)

UG3B = _form(
    FormType.UG3B,
    _schema(
        ["svvNetId", "studentName", "projectTitle", "guideName", "conferenceDate",
         "bankDetails", "registrationFee"],
        svvNetId=_text(minLength=1),
        studentName=_text(minLength=1),
        yearOfAdmission=_text(),
        feesPaid=_yes_no(),
        projectTitle=_text(minLength=1),
        guideName=_text(),
        employeeCode=_text(),
        conferenceDate=_date(),
        organization=_text(),
        publisher=_text(),
        paperLink=_text(),
        authors=_list_of(_text()),
        bankDetails=BANK_DETAILS,
        registrationFee=_text(),
        previousClaim=_yes_no(),
        claimDate=_date(),
        amountReceived=_text(),
        amountSanctioned=_text(),
    ),
    [
        slot("paperCopy", PDF_TYPES, max_mb=5, required=True),
        slot("groupLeaderSignature", SIGNATURE_TYPES, max_mb=5, required=True),
        slot("additionalDocuments", PDF_TYPES, max_mb=5),
        slot("guideSignature", SIGNATURE_TYPES, max_mb=5, required=True),
        slot("pdfDocuments", PDF_TYPES, max_mb=5, max_count=5, group="supportingDocuments"),
        slot("zipFiles", ZIP_TYPES, max_mb=5, max_count=2, group="supportingDocuments"),
    ],
    reviewer_fields=("amountSanctioned",),
)

PG1 = _form(
    FormType.PG1,
    _schema(
        ["svvNetId", "studentName", "department", "yearOfAdmission", "sttpTitle",
         "guideName", "numberOfDays", "dateFrom", "dateTo", "organization", "reason",
         "knowledgeUtilization", "bankDetails", "registrationFee"],
        svvNetId=_text(minLength=1),
        studentName=_text(minLength=1),
        department=_text(),
        yearOfAdmission=_text(),
        feesPaid=_yes_no(),
        sttpTitle=_text(minLength=1),
        guideName=_text(),
        coGuideName=_text(),
        numberOfDays={"type": "integer", "minimum": 1},
        dateFrom=_date(),
        dateTo=_date(),
        organization=_text(),
        reason=_text(),
        knowledgeUtilization=_text(),
        bankDetails=BANK_DETAILS,
        registrationFee=_text(),
        previousClaim=_yes_no(),
        claimDate=_date(),
        amountReceived=_text(),
        amountSanctioned=_text(),
    ),
    [
        slot("receiptCopy", DOCUMENT_TYPES, max_mb=5, required=True),
        slot("additionalDocuments", PDF_TYPES, max_mb=5),
        slot("guideSignature", SIGNATURE_TYPES, max_mb=5, required=True),
        slot("pdfDocuments", PDF_TYPES, max_mb=5, max_count=5, group="supportingDocuments"),
        slot("zipFiles", ZIP_TYPES, max_mb=5, max_count=2, group="supportingDocuments"),
    ],
    reviewer_fields=("amountSanctioned",),
)

PG2A = _form(
    FormType.PG2A,
    _schema(
        ["svvNetId", "organizingInstitute", "projectTitle", "studentDetails", "expenses",
         "bankDetails", "amountClaimed"],
        svvNetId=_text(minLength=1),
        organizingInstitute=_text(minLength=1),
        projectTitle=_text(minLength=1),
        studentDetails=_list_of(_object(
            ["name", "branch", "rollNo"],
            name=_text(),
            division=_text(),
            branch=_text(),
            rollNo=_text(),
            mobileNo=_text(),
        ), min_items=1),
        expenses=_list_of(_object(
            ["description", "amount"],
            description=_text(),
            amount=_number(),
        ), min_items=1),
        bankDetails=BANK_DETAILS,
        amountClaimed=_number(),
        amountRecommended=_number(),
        comments=_text(),
        finalAmount=_number(),
        date=_date(),
    ),
    [
        slot("bills", DOCUMENT_TYPES, max_mb=5, max_count=10, group="bills", required=True),
        slot("zips", ZIP_TYPES, max_mb=5, max_count=2, group="bills"),
        slot("studentSignature", SIGNATURE_TYPES, max_mb=5, required=True),
        slot("guideSignature", SIGNATURE_TYPES, max_mb=5, required=True),
        slot("hodSignature", SIGNATURE_TYPES, max_mb=5),
    ],
    reviewer_fields=("amountRecommended", "comments", "finalAmount", "date"),
    reviewer_slots=("hodSignature",),
)

PG2B = _form(
    FormType.PG2B,
    _schema(
        ["svvNetId", "department", "studentName", "yearOfAdmission", "feesPaid",
         "projectTitle", "guideName", "conferenceDate", "organization", "publisher",
         "authors", "bankDetails", "registrationFee", "previousClaim"],
        svvNetId=_text(minLength=1),
        department=_text(),
        studentName=_text(minLength=1),
        yearOfAdmission=_text(),
        feesPaid=_yes_no(),
        projectTitle=_text(minLength=1),
        guideName=_text(),
        coGuideName=_text(),
        conferenceDate=_date(),
        organization=_text(),
        publisher=_text(),
        paperLink=_text(),
        authors=_list_of(_text(), min_items=4, maxItems=4),
        bankDetails=BANK_DETAILS,
        registrationFee=_text(),
        previousClaim=_yes_no(),
        claimDate=_date(),
        amountReceived=_text(),
        amountSanctioned=_text(),
    ),
    [
        slot("paperCopy", PDF_TYPES, max_mb=5, required=True),
        slot("groupLeaderSignature", SIGNATURE_TYPES, max_mb=5, required=True),
        slot("guideSignature", SIGNATURE_TYPES, max_mb=5, required=True),
        # PDFs or ZIPs, never both.
        slot("additionalDocuments", PDF_TYPES | ZIP_TYPES, max_mb=5, max_count=5,
             group="additionalDocuments"),
    ],
    reviewer_fields=("amountSanctioned",),
)

R1 = _form(
    FormType.R1,
    _schema(
        ["svvNetId", "guideName", "employeeCodes", "studentName", "yearOfAdmission",
         "branch", "rollNo", "mobileNo", "feesPaid", "receivedFinance", "authors",
         "bankDetails"],
        svvNetId=_text(minLength=1),
        guideName=_text(minLength=1),
        coGuideName=_text(),
        employeeCodes=_list_of(_text(), min_items=1),
        studentName=_text(minLength=1),
        yearOfAdmission=_text(),
        branch=_text(),
        rollNo=_text(),
        mobileNo=_text(),
        feesPaid=_yes_no(),
        receivedFinance=_yes_no(),
        financeDetails=_text(),
        paperTitle=_text(),
        paperLink=_text(),
        authors=_list_of(_text(), min_items=1),
        organizers=_text(),
        reasonForAttending=_text(),
        numberOfDays={"type": "integer", "minimum": 0},
        dateFrom=_date(),
        dateTo=_date(),
        registrationFee=_text(),
        bankDetails=BANK_DETAILS,
        amountClaimed=_text(),
        amountSanctioned=_text(),
        sdcChairpersonDate=_date(),
    ),
    [
        slot("proofDocument", DOCUMENT_TYPES, max_mb=25),
        slot("studentSignature", SIGNATURE_TYPES, max_mb=25, required=True),
        slot("guideSignature", SIGNATURE_TYPES, max_mb=25, required=True),
        slot("hodSignature", SIGNATURE_TYPES, max_mb=25, required=True),
        slot("sdcChairpersonSignature", SIGNATURE_TYPES, max_mb=25),
        slot("pdfs", PDF_TYPES, max_mb=25, max_count=5, group="supportingDocuments"),
        slot("zipFile", ZIP_TYPES, max_mb=25, group="supportingDocuments"),
    ],
    reviewer_fields=("amountSanctioned", "sdcChairpersonDate"),
    reviewer_slots=("sdcChairpersonSignature",),
)


FORM_DEFINITIONS: Dict[FormType, FormDefinition] = {
    definition.form_type: definition
    for definition in (UG1, UG2, UG3A, UG3B, PG1, PG2A, PG2B, R1)
}


def get_form_definition(form_type: Any) -> FormDefinition:
    """Look up a form definition.

    Args:
        form_type: FormType or its string value

    Raises:
        MalformedRequestError: If the form type is unknown
    """
    try:
        return FORM_DEFINITIONS[FormType(form_type)]
    except (ValueError, KeyError):
        raise MalformedRequestError(f"Unknown form type: {form_type!r}") from None


__all__ = [
    "REVIEWER_GRANTS",
    "FormDefinition",
    "FORM_DEFINITIONS",
    "get_form_definition",
]
