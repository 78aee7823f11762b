import re
import uuid
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple
from sqlmodel import Session, select

from signaturehub.core.config import settings
from signaturehub.core.exceptions import NotFoundError, ValidationError
from signaturehub.db.schema import DocumentTemplate, JurisdictionAddendum, VerificationMethod
from signaturehub.models.package import SignerAssignment


ADDENDUM_PLACEHOLDER = "jurisdictionAddendum"
MINOR_AGE = 18


# ==============================================================================
# AGE RULES
# ==============================================================================


def age_at(date_of_birth: date, target: date) -> int:
    """Whole years on `target`; the birthday itself counts as completed."""
    age = target.year - date_of_birth.year
    if (target.month, target.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age


def minimum_age_for(role: str, requirements: Optional[Dict[str, int]] = None) -> int:
    requirements = requirements if requirements is not None else settings.role_age_requirements
    return requirements.get(role.lower(), 0)


def validate_ages(
    signers: Sequence[SignerAssignment],
    event_date: Optional[date],
    requirements: Optional[Dict[str, int]] = None,
) -> List[str]:
    """
    Checks every age-gated role against age at the event date (today when no
    event date is given). Returns ALL violations; an empty list means valid.
    Also flags signers under 18 as minors when the caller left is_minor unset.
    """
    target = event_date or date.today()
    errors = []

    for signer in signers:
        minimum = minimum_age_for(signer.role, requirements)

        if minimum > 0:
            if not signer.date_of_birth:
                errors.append(
                    f"Date of birth is required for {signer.name} ({signer.role}) "
                    f"- role requires minimum age of {minimum}")
                continue

            age = age_at(signer.date_of_birth, target)
            if age < minimum:
                errors.append(
                    f"{signer.name} will be {age} years old on {target.isoformat()} "
                    f"but {signer.role} requires minimum age of {minimum}")

        if signer.date_of_birth and signer.is_minor is None:
            signer.is_minor = age_at(signer.date_of_birth, target) < MINOR_AGE

    return errors


# ==============================================================================
# IDENTITY & ADMIN
# ==============================================================================


def identity_key(signer: SignerAssignment) -> str:
    """Email (case-folded), else phone, else name (case-folded)."""
    if signer.email:
        return signer.email.strip().lower()
    if signer.phone:
        return signer.phone.strip()
    return signer.name.strip().lower()


def consolidate(signers: Sequence[SignerAssignment]) -> Dict[str, List[SignerAssignment]]:
    """Groups assignments by identity, preserving first-seen order."""
    groups: Dict[str, List[SignerAssignment]] = {}
    for signer in signers:
        groups.setdefault(identity_key(signer), []).append(signer)
    return groups


def validate_admin(signers: Sequence[SignerAssignment]) -> None:
    """
    At most one physical signer may hold the admin flag. When nobody is
    flagged, the first assignment is promoted.
    """
    admins = [s for s in signers if s.is_package_admin]

    if not admins:
        if signers:
            signers[0].is_package_admin = True
        return

    if len({identity_key(a) for a in admins}) > 1:
        raise ValidationError(
            "Only one person can be designated as package admin. "
            "Multiple admins found with different contact info.")


def detect_verification_method(email: Optional[str], phone: Optional[str]) -> VerificationMethod:
    has_email = bool(email and "@" in email)
    has_phone = bool(phone and len(phone) >= 10)

    if has_email and has_phone:
        return VerificationMethod.BOTH
    if has_phone and not has_email:
        return VerificationMethod.SMS
    return VerificationMethod.EMAIL


# ==============================================================================
# SUBSTITUTION
# ==============================================================================


def substitute(content: str, variables: Optional[Dict[str, Any]]) -> str:
    """Replaces every {{ key }} placeholder. Unknown placeholders are left in place."""
    if not variables:
        return content

    resolved = content
    for key, value in variables.items():
        pattern = re.compile(r"\{\{\s*" + re.escape(key) + r"\s*\}\}")
        text = "" if value is None else str(value)
        resolved = pattern.sub(lambda _: text, resolved)
    return resolved


def has_placeholder(content: str, key: str) -> bool:
    return re.search(r"\{\{\s*" + re.escape(key) + r"\s*\}\}", content) is not None


def render_addendum(addendum: JurisdictionAddendum) -> str:
    return (
        f'<div class="jurisdiction-addendum">\n'
        f"<h4>{addendum.jurisdiction_name} Legal Notice</h4>\n"
        f"{addendum.addendum_html}\n"
        f"</div>"
    )


def build_signer_variables(
    signer: SignerAssignment,
    roles: Sequence[str],
    event_date: Optional[date] = None,
) -> Dict[str, str]:
    """
    Signer-scope variables for one consolidated group. Kept apart from the
    package-scope map so one signer's identity never reaches another's copy.
    """
    variables = {
        "signerName": signer.name,
        "signerEmail": signer.email or "",
        "signerPhone": signer.phone or "",
        "signerRoles": ", ".join(r[:1].upper() + r[1:] for r in roles),
        "signerRolesList": ", ".join(roles),
    }

    if signer.date_of_birth and event_date:
        age = age_at(signer.date_of_birth, event_date)
        variables["signerAge"] = str(age)
        variables["signerIsMinor"] = "Yes" if age < MINOR_AGE else "No"

    return variables


class ResolvedBase:
    """Output of the package-scope pass."""

    def __init__(self, document_name: str, content: str, template_code: Optional[str],
                 template_version: Optional[int], variables: Dict[str, Any]):
        self.document_name = document_name
        self.content = content
        self.template_code = template_code
        self.template_version = template_version
        self.variables = variables


class ContentResolver:
    """
    Two-pass document resolution.
    Pass 1 (`resolve_base`) runs once per package or request with package-scope
    variables. Pass 2 (`resolve_for_signer`) runs on a fresh copy of the base
    for every consolidated signer.
    """

    def __init__(self, session: Session):
        self.session = session

    def get_template(self, tenant_id: uuid.UUID, template_code: str) -> DocumentTemplate:
        template = self.session.exec(
            select(DocumentTemplate).where(
                DocumentTemplate.tenant_id == tenant_id,
                DocumentTemplate.template_code == template_code,
                DocumentTemplate.is_active == True  # noqa: E712
            )
        ).first()
        if not template:
            raise NotFoundError(f"Template '{template_code}' not found.")
        return template

    def get_addendum(self, tenant_id: uuid.UUID, jurisdiction_code: str) -> Optional[JurisdictionAddendum]:
        return self.session.exec(
            select(JurisdictionAddendum).where(
                JurisdictionAddendum.tenant_id == tenant_id,
                JurisdictionAddendum.jurisdiction_code == jurisdiction_code.strip().upper(),
                JurisdictionAddendum.is_active == True  # noqa: E712
            )
        ).first()

    def resolve_base(
        self,
        tenant_id: uuid.UUID,
        document_name: Optional[str],
        document_content: Optional[str],
        template_code: Optional[str],
        merge_variables: Optional[Dict[str, Any]],
        jurisdiction: Optional[str],
    ) -> ResolvedBase:
        variables: Dict[str, Any] = dict(merge_variables or {})

        # 1. Source body: a named template wins over inline content
        source = document_content or ""
        template_version = None
        if template_code:
            template = self.get_template(tenant_id, template_code)
            source = template.html_content
            document_name = document_name or template.name
            template_version = template.version

        if not document_name:
            raise ValidationError("document_name is required when no template is used.")

        # 2. Jurisdiction addendum becomes a package-scope variable
        addendum_block = None
        if jurisdiction:
            addendum = self.get_addendum(tenant_id, jurisdiction)
            if addendum:
                addendum_block = render_addendum(addendum)
                variables["jurisdictionAddendum"] = addendum_block
                variables["jurisdictionName"] = addendum.jurisdiction_name
                variables["jurisdictionCode"] = jurisdiction

        content = substitute(source, variables)

        # 3. Append the addendum when the source had nowhere to put it
        if addendum_block and not has_placeholder(source, ADDENDUM_PLACEHOLDER):
            content = f"{content}\n{addendum_block}"

        return ResolvedBase(document_name, content, template_code, template_version, variables)

    @staticmethod
    def resolve_for_signer(
        base_content: str,
        signer: SignerAssignment,
        roles: Sequence[str],
        event_date: Optional[date] = None,
    ) -> Tuple[str, Dict[str, str]]:
        signer_variables = build_signer_variables(signer, roles, event_date)
        return substitute(base_content, signer_variables), signer_variables


# Merge variables surfaced as labelled context in code messages and status pages
CONTEXT_FIELD_MAP = {
    "eventName": "Event",
    "eventDate": "Event Date",
    "horseName": "Horse",
    "riderName": "Rider",
    "trainerName": "Trainer",
    "ownerName": "Owner",
    "competitionName": "Competition",
    "venueName": "Venue",
    "className": "Class",
    "divisionName": "Division",
}


def context_fields(merge_variables: Optional[Dict[str, Any]]) -> List[Dict[str, str]]:
    if not merge_variables:
        return []
    return [
        {"label": label, "value": str(merge_variables[key])}
        for key, label in CONTEXT_FIELD_MAP.items()
        if merge_variables.get(key)
    ]
