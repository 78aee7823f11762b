import os
import secrets
import uuid
from loguru import logger
from sqlmodel import Session, select
from signaturehub.core.dependencies import hash_api_key
from signaturehub.db.core import engine, init_db
from signaturehub.db.schema import ApiKey, DocumentTemplate, JurisdictionAddendum


DEMO_TENANT_NAME = "Demo Horse Shows"

# 1. Starter document templates
DEFAULT_TEMPLATES = [
    {
        "template_code": "WAIVER-STD",
        "name": "Standard Liability Waiver",
        "description": "General release for event participants",
        "html_content": (
            "<h2>{{eventName}} Liability Waiver</h2>\n"
            "<p>I, {{signerName}}, signing as {{signerRoles}}, acknowledge the inherent "
            "risks of equestrian activities at {{venueName}} on {{eventDate}}.</p>\n"
            "{{jurisdictionAddendum}}"
        ),
    },
    {
        "template_code": "MINOR-CONSENT",
        "name": "Parent/Guardian Consent",
        "description": "Consent for riders under 18",
        "html_content": (
            "<h2>Guardian Consent</h2>\n"
            "<p>I, {{signerName}} ({{signerRoles}}), consent to the participation of "
            "{{riderName}} in {{eventName}}.</p>"
        ),
    },
]

# 2. Jurisdiction addenda
DEFAULT_ADDENDA = {
    "US-CA": ("California", "<p>California Civil Code 1668 applies to this release.</p>"),
    "US-FL": ("Florida", "<p>Under Florida law (F.S. 773), an equine activity sponsor is "
                         "not liable for injuries resulting from inherent risks.</p>"),
}


def seed_api_key(session: Session) -> uuid.UUID:
    """Creates the demo tenant key. The raw key is printed once and never stored."""
    logger.info("--- Seeding API Key ---")
    existing = session.exec(select(ApiKey).where(ApiKey.tenant_name == DEMO_TENANT_NAME)).first()
    if existing:
        logger.info(f"Existing tenant: {DEMO_TENANT_NAME}")
        return existing.tenant_id

    raw_key = os.getenv("SEED_API_KEY") or f"sk_demo_{secrets.token_urlsafe(24)}"
    api_key = ApiKey(key_hash=hash_api_key(raw_key), tenant_id=uuid.uuid4(), tenant_name=DEMO_TENANT_NAME)
    session.add(api_key)
    session.flush()
    logger.info(f"Created tenant {DEMO_TENANT_NAME}. API key: {raw_key}")
    return api_key.tenant_id


def seed_templates(session: Session, tenant_id: uuid.UUID):
    logger.info("--- Seeding Templates ---")
    for data in DEFAULT_TEMPLATES:
        template = session.exec(select(DocumentTemplate).where(
            DocumentTemplate.tenant_id == tenant_id,
            DocumentTemplate.template_code == data["template_code"])).first()
        if not template:
            session.add(DocumentTemplate(tenant_id=tenant_id, created_by="seed", **data))
            logger.info(f"Created Template: {data['template_code']}")
        else:
            logger.info(f"Existing Template: {data['template_code']}")


def seed_addenda(session: Session, tenant_id: uuid.UUID):
    logger.info("--- Seeding Jurisdiction Addenda ---")
    for code, (name, html) in DEFAULT_ADDENDA.items():
        addendum = session.exec(select(JurisdictionAddendum).where(
            JurisdictionAddendum.tenant_id == tenant_id,
            JurisdictionAddendum.jurisdiction_code == code)).first()
        if not addendum:
            session.add(JurisdictionAddendum(
                tenant_id=tenant_id, jurisdiction_code=code,
                jurisdiction_name=name, addendum_html=html))
            logger.info(f"Created Addendum: {code}")
        elif addendum.addendum_html != html:
            addendum.addendum_html = html
            session.add(addendum)


def main():
    # Ensure tables exist (if not using Alembic)
    init_db()

    with Session(engine) as session:
        try:
            # 1. Tenant
            tenant_id = seed_api_key(session)

            # 2. Templates
            seed_templates(session, tenant_id)

            # 3. Addenda
            seed_addenda(session, tenant_id)

            session.commit()
            logger.info("Database seeding completed successfully.")

        except Exception as e:
            session.rollback()
            logger.error(f"Seeding failed: {e}")
            raise e


if __name__ == "__main__":
    main()
