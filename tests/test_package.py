"""Tests for multi-party signing packages."""

import uuid
from datetime import date, timedelta

import pytest
from sqlmodel import select

from signaturehub.core.exceptions import NotFoundError, StateConflictError, ValidationError
from signaturehub.db.schema import (
    PackageStatus, RequestStatus, RoleStatus, SignatureRequest, SignatureType, SigningRole
)
from signaturehub.models.signing import SubmitSignatureRequest
from signaturehub.services.expiration import ExpirationService
from signaturehub.services.package import BATCH_LIMIT, PackageService
from signaturehub.services.signing import SigningService
from signaturehub.utils.dates import utc_now

from conftest import TEST_TENANT_ID, load_request, mark_verified, package_input, token_from_url


RIDER_AND_OWNER_AND_TRAINER = [
    {"role": "rider", "name": "Alex Lee", "email": "alex@example.com"},
    {"role": "owner", "name": "Alex Lee", "email": "Alex@Example.com"},
    {"role": "trainer", "name": "Bo Chen", "email": "bo@example.com", "date_of_birth": date(1980, 4, 2)},
]


def sign(session, token_value, name="Signer"):
    mark_verified(session, token_value)
    return SigningService(session).submit_signature(
        token_value, SubmitSignatureRequest(signature_type=SignatureType.TYPED, typed_name=name))


def tokens_by_signer(created):
    return {link.signer_name: token_from_url(link.sign_url) for link in created.signature_requests}


class TestCreatePackage:
    def test_alex_lee_consolidated_into_one_request(self, session):
        created = PackageService(session).create_package(TEST_TENANT_ID, package_input([
            {"role": "rider", "name": "Alex Lee", "email": "a@x.com"},
            {"role": "guardian", "name": "Alex Lee", "email": "a@x.com",
             "date_of_birth": date(1980, 1, 1), "is_package_admin": True},
        ], event_date=date(2025, 6, 1)))

        assert created.total_signers == 1
        assert len(created.signature_requests) == 1
        link = created.signature_requests[0]
        assert set(link.roles) == {"rider", "guardian"}
        assert link.is_package_admin is True
        assert len(session.exec(select(SignatureRequest)).all()) == 1

        roles = session.exec(select(SigningRole)).all()
        assert len(roles) == 2
        assert len({r.consolidated_group for r in roles}) == 1
        assert all(r.request_id == link.request_id for r in roles)

    def test_package_code_and_status(self, session):
        created = PackageService(session).create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER))
        assert created.package_code.startswith("PKG-")
        assert created.status == PackageStatus.PENDING
        assert created.total_signers == 2

    def test_links_sent_to_every_signer(self, session, channel):
        created = PackageService(session).create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER))
        assert len(channel.to("alex@example.com")) == 1
        assert len(channel.to("bo@example.com")) == 1
        for token in tokens_by_signer(created).values():
            assert load_request(session, token).status == RequestStatus.SENT

    def test_signer_content_has_own_identity_only(self, session):
        created = PackageService(session).create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER))
        tokens = tokens_by_signer(created)

        alex = load_request(session, tokens["Alex Lee"])
        bo = load_request(session, tokens["Bo Chen"])
        assert "Alex Lee agrees as Rider, Owner for Spring Classic" in alex.document_content
        assert "Bo Chen" not in alex.document_content
        assert "Bo Chen agrees as Trainer" in bo.document_content
        assert "Alex" not in bo.document_content
        assert alex.roles_display == "rider, owner"

    def test_age_violations_batched(self, session):
        with pytest.raises(ValidationError) as exc:
            PackageService(session).create_package(TEST_TENANT_ID, package_input([
                {"role": "rider", "name": "Kid", "email": "kid@example.com"},
                {"role": "trainer", "name": "Young", "email": "y@example.com", "date_of_birth": date(2010, 1, 1)},
                {"role": "guardian", "name": "Nobody", "email": "n@example.com"},
            ]))
        assert len(exc.value.detail["errors"]) == 2
        assert session.exec(select(SignatureRequest)).all() == []

    def test_signer_without_contact_rejected(self, session):
        with pytest.raises(ValidationError):
            PackageService(session).create_package(TEST_TENANT_ID, package_input([
                {"role": "rider", "name": "Alex Lee"},
            ]))

    def test_two_admins_rejected(self, session):
        with pytest.raises(ValidationError):
            PackageService(session).create_package(TEST_TENANT_ID, package_input([
                {"role": "rider", "name": "Alex", "email": "a@example.com", "is_package_admin": True},
                {"role": "owner", "name": "Pat", "email": "p@example.com", "is_package_admin": True},
            ]))

    def test_private_callback_rejected(self, session):
        with pytest.raises(ValidationError):
            PackageService(session).create_package(TEST_TENANT_ID, package_input(
                RIDER_AND_OWNER_AND_TRAINER, callback_url="http://10.0.0.5/hook"))

    def test_first_signer_becomes_admin(self, session):
        created = PackageService(session).create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER))
        admins = [link.signer_name for link in created.signature_requests if link.is_package_admin]
        assert admins == ["Alex Lee"]

    def test_delivery_failure_does_not_block_creation(self, session, channel):
        channel.fail = True
        created = PackageService(session).create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER))
        for token in tokens_by_signer(created).values():
            assert load_request(session, token).status == RequestStatus.PENDING


class TestCompletion:
    """completed_signers counts people, not roles."""

    def test_three_roles_two_signers(self, session):
        created = PackageService(session).create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER))
        tokens = tokens_by_signer(created)
        service = PackageService(session)

        sign(session, tokens["Alex Lee"], "Alex Lee")
        status = service.get_status(TEST_TENANT_ID, created.package_code)
        assert status.status == PackageStatus.PARTIAL
        assert status.completed_signers == 1

        roles = session.exec(select(SigningRole).where(SigningRole.role_name.in_(["rider", "owner"]))).all()
        assert all(r.status == RoleStatus.SIGNED for r in roles)

        sign(session, tokens["Bo Chen"], "Bo Chen")
        status = service.get_status(TEST_TENANT_ID, str(created.package_id))
        assert status.status == PackageStatus.COMPLETE
        assert status.completed_signers == 2
        assert status.total_signers == 2
        assert status.completed_at is not None

    def test_signing_twice_is_conflict(self, session):
        created = PackageService(session).create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER))
        token = tokens_by_signer(created)["Bo Chen"]
        sign(session, token)
        with pytest.raises(StateConflictError):
            sign(session, token)


class TestStatusQueries:
    def test_lookup_by_id_or_code(self, session):
        created = PackageService(session).create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER))
        service = PackageService(session)
        assert service.get_status(TEST_TENANT_ID, created.package_code).package_id == created.package_id
        assert service.get_status(TEST_TENANT_ID, str(created.package_id)).package_code == created.package_code

    def test_other_tenant_cannot_see_package(self, session):
        created = PackageService(session).create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER))
        with pytest.raises(NotFoundError):
            PackageService(session).get_status(uuid.uuid4(), created.package_code)

    def test_batch_dedupes_and_reports_missing(self, session):
        service = PackageService(session)
        created = service.create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER))
        result = service.get_status_batch(
            TEST_TENANT_ID, [created.package_code, str(created.package_id), created.package_code, "PKG-NOPE"])
        assert len(result.packages) == 2
        assert result.not_found == ["PKG-NOPE"]

    def test_batch_limit(self, session):
        refs = [f"PKG-{i:08d}" for i in range(BATCH_LIMIT + 1)]
        with pytest.raises(ValidationError):
            PackageService(session).get_status_batch(TEST_TENANT_ID, refs)

        result = PackageService(session).get_status_batch(TEST_TENANT_ID, refs[:BATCH_LIMIT] + refs[:5])
        assert len(result.not_found) == BATCH_LIMIT

    def test_public_status_hides_contacts(self, session):
        created = PackageService(session).create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER))
        public = PackageService(session).get_public_status(created.package_code)
        dumped = public.model_dump()
        assert "alex@example.com" not in str(dumped)
        assert {"label": "Event", "value": "Spring Classic"} in public.context_fields
        assert len(public.signers) == 2

    def test_list_filters_by_external_ref(self, session):
        service = PackageService(session)
        service.create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER, external_ref="entry-1"))
        service.create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER, external_ref="entry-2"))
        rows = service.list_packages(TEST_TENANT_ID, external_ref="entry-2")
        assert len(rows) == 1
        assert rows[0].external_ref == "entry-2"


class TestCancelPackage:
    def test_cancel_closes_open_requests(self, session, channel):
        service = PackageService(session)
        created = service.create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER))
        tokens = tokens_by_signer(created)
        sign(session, tokens["Bo Chen"])

        status = service.cancel_package(TEST_TENANT_ID, created.package_code)
        assert status.status == PackageStatus.CANCELLED
        assert load_request(session, tokens["Alex Lee"]).status == RequestStatus.CANCELLED
        assert load_request(session, tokens["Bo Chen"]).status == RequestStatus.SIGNED
        assert any("cancelled" in m["subject"] for m in channel.to("alex@example.com"))

    def test_cancel_twice_is_conflict(self, session):
        service = PackageService(session)
        created = service.create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER))
        service.cancel_package(TEST_TENANT_ID, created.package_code)
        with pytest.raises(StateConflictError):
            service.cancel_package(TEST_TENANT_ID, created.package_code)


class TestDecline:
    def test_decline_notifies_admin_with_replacement_link(self, session, channel):
        created = PackageService(session).create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER))
        tokens = tokens_by_signer(created)

        result = SigningService(session).decline(tokens["Bo Chen"], "Not my horse")
        assert result.status == RequestStatus.DECLINED
        assert result.admin_notified is True

        notice = [m for m in channel.to("alex@example.com") if m["subject"].startswith("Signature declined")]
        assert len(notice) == 1
        assert "Not my horse" in notice[0]["body"]
        assert tokens["Alex Lee"] in notice[0]["body"]

        role = session.exec(select(SigningRole).where(SigningRole.role_name == "trainer")).one()
        assert role.status == RoleStatus.DECLINED

    def test_admin_decline_notifies_nobody(self, session):
        created = PackageService(session).create_package(TEST_TENANT_ID, package_input(RIDER_AND_OWNER_AND_TRAINER))
        result = SigningService(session).decline(tokens_by_signer(created)["Alex Lee"])
        assert result.admin_notified is False

    def test_reason_is_truncated(self, session, make_request):
        token = token_from_url(make_request().sign_url)
        SigningService(session).decline(token, "x" * 800)
        assert len(load_request(session, token).decline_reason) == 500


class TestExpirySweep:
    def test_sweep_expires_overdue_requests_and_packages(self, session, channel):
        service = PackageService(session)
        created = service.create_package(TEST_TENANT_ID, package_input(
            RIDER_AND_OWNER_AND_TRAINER, expires_at=utc_now() + timedelta(hours=1)))

        result = ExpirationService(session).run(now=utc_now() + timedelta(hours=2))
        assert result == {"requests": 2, "packages": 1}
        assert service.get_status(TEST_TENANT_ID, created.package_code).status == PackageStatus.EXPIRED
        assert any("expired" in m["subject"] for m in channel.to("bo@example.com"))

    def test_sweep_is_idempotent(self, session, channel):
        PackageService(session).create_package(TEST_TENANT_ID, package_input(
            RIDER_AND_OWNER_AND_TRAINER, expires_at=utc_now() + timedelta(hours=1)))
        later = utc_now() + timedelta(hours=2)

        ExpirationService(session).run(now=later)
        sent = len(channel.messages)
        assert ExpirationService(session).run(now=later) == {"requests": 0, "packages": 0}
        assert len(channel.messages) == sent

    def test_sweep_leaves_signed_requests(self, session):
        created = PackageService(session).create_package(TEST_TENANT_ID, package_input(
            RIDER_AND_OWNER_AND_TRAINER, expires_at=utc_now() + timedelta(hours=1)))
        token = tokens_by_signer(created)["Bo Chen"]
        sign(session, token)

        result = ExpirationService(session).run(now=utc_now() + timedelta(hours=2))
        assert result["requests"] == 1
        assert load_request(session, token).status == RequestStatus.SIGNED
