"""Tests for age rules, signer identity and document resolution."""

from datetime import date

import pytest

from signaturehub.core.exceptions import NotFoundError, ValidationError
from signaturehub.db.schema import DocumentTemplate, JurisdictionAddendum, VerificationMethod
from signaturehub.models.package import SignerAssignment
from signaturehub.services.content import (
    ContentResolver, age_at, build_signer_variables, consolidate, context_fields,
    detect_verification_method, identity_key, substitute, validate_admin, validate_ages
)

from conftest import TEST_TENANT_ID


def signer(role="rider", name="Alex Lee", **kwargs):
    return SignerAssignment(role=role, name=name, **kwargs)


class TestAgeAt:
    def test_birthday_counts_as_completed(self):
        assert age_at(date(2007, 6, 1), date(2025, 6, 1)) == 18

    def test_one_day_before_birthday(self):
        assert age_at(date(2007, 6, 2), date(2025, 6, 1)) == 17

    def test_month_rollover(self):
        # Same day number, earlier month
        assert age_at(date(2007, 2, 1), date(2025, 1, 31)) == 17
        assert age_at(date(2007, 2, 1), date(2025, 2, 1)) == 18

    def test_year_end_rollover(self):
        assert age_at(date(2006, 12, 31), date(2024, 12, 30)) == 17
        assert age_at(date(2006, 12, 31), date(2024, 12, 31)) == 18

    def test_leap_day_birthday(self):
        assert age_at(date(2004, 2, 29), date(2022, 2, 28)) == 17
        assert age_at(date(2004, 2, 29), date(2022, 3, 1)) == 18


class TestValidateAges:
    EVENT = date(2025, 6, 1)

    def test_trainer_exactly_eighteen_passes(self):
        assert validate_ages([signer("trainer", date_of_birth=date(2007, 6, 1))], self.EVENT) == []

    def test_trainer_one_day_short_fails(self):
        errors = validate_ages([signer("trainer", date_of_birth=date(2007, 6, 2))], self.EVENT)
        assert len(errors) == 1
        assert "17 years old" in errors[0]
        assert "minimum age of 18" in errors[0]

    def test_missing_date_of_birth_fails_gated_role(self):
        errors = validate_ages([signer("guardian")], self.EVENT)
        assert len(errors) == 1
        assert "Date of birth is required" in errors[0]

    def test_ungated_role_needs_no_date_of_birth(self):
        assert validate_ages([signer("rider")], self.EVENT) == []

    def test_role_lookup_ignores_case(self):
        assert validate_ages([signer("Trainer")], self.EVENT)

    def test_all_violations_reported_together(self):
        errors = validate_ages([
            signer("trainer", "Young Trainer", date_of_birth=date(2010, 1, 1)),
            signer("guardian", "No Birthday"),
            signer("coach", "Young Coach", date_of_birth=date(2009, 1, 1)),
        ], self.EVENT)
        assert len(errors) == 3

    def test_sets_minor_flag_when_unset(self):
        rider = signer("rider", date_of_birth=date(2012, 3, 1))
        adult = signer("owner", "Pat Doe", date_of_birth=date(1980, 3, 1))
        validate_ages([rider, adult], self.EVENT)
        assert rider.is_minor is True
        assert adult.is_minor is False

    def test_explicit_minor_flag_is_kept(self):
        rider = signer("rider", date_of_birth=date(2012, 3, 1), is_minor=False)
        validate_ages([rider], self.EVENT)
        assert rider.is_minor is False

    def test_custom_requirements(self):
        errors = validate_ages([signer("groom", date_of_birth=date(2010, 1, 1))], self.EVENT, {"groom": 16})
        assert len(errors) == 1


class TestIdentity:
    def test_email_wins_and_is_case_folded(self):
        assert identity_key(signer(email="Alex@Example.com", phone="+15551234567")) == "alex@example.com"

    def test_phone_then_name(self):
        assert identity_key(signer(phone="+15551234567")) == "+15551234567"
        assert identity_key(signer(name="  Alex LEE ")) == "alex lee"

    def test_consolidate_groups_same_person(self):
        groups = consolidate([
            signer("rider", email="alex@example.com"),
            signer("trainer", "Bo Chen", email="bo@example.com"),
            signer("owner", email="ALEX@example.com"),
        ])
        assert list(groups) == ["alex@example.com", "bo@example.com"]
        assert [s.role for s in groups["alex@example.com"]] == ["rider", "owner"]


class TestValidateAdmin:
    def test_first_signer_promoted_when_none_flagged(self):
        signers = [signer("rider", email="a@example.com"), signer("owner", "Pat", email="p@example.com")]
        validate_admin(signers)
        assert signers[0].is_package_admin is True
        assert signers[1].is_package_admin is False

    def test_same_person_flagged_twice_is_fine(self):
        validate_admin([
            signer("rider", email="a@example.com", is_package_admin=True),
            signer("guardian", email="A@example.com", is_package_admin=True),
        ])

    def test_two_admins_rejected(self):
        with pytest.raises(ValidationError):
            validate_admin([
                signer("rider", email="a@example.com", is_package_admin=True),
                signer("owner", "Pat", email="p@example.com", is_package_admin=True),
            ])


class TestDetectVerificationMethod:
    def test_detection(self):
        assert detect_verification_method("a@example.com", "+15551234567") == VerificationMethod.BOTH
        assert detect_verification_method(None, "+15551234567") == VerificationMethod.SMS
        assert detect_verification_method("a@example.com", None) == VerificationMethod.EMAIL
        assert detect_verification_method("a@example.com", "123") == VerificationMethod.EMAIL


class TestSubstitution:
    def test_whitespace_inside_braces(self):
        assert substitute("Hi {{ signerName }} and {{signerName}}", {"signerName": "Alex"}) == "Hi Alex and Alex"

    def test_unknown_placeholders_left_alone(self):
        assert substitute("{{horseName}}", {"signerName": "Alex"}) == "{{horseName}}"

    def test_values_are_not_regex_expanded(self):
        assert substitute("{{a}}", {"a": r"\1 $0"}) == r"\1 $0"

    def test_signer_variables(self):
        variables = build_signer_variables(
            signer("rider", date_of_birth=date(2012, 3, 1)), ["rider", "owner"], date(2025, 6, 1))
        assert variables["signerRoles"] == "Rider, Owner"
        assert variables["signerRolesList"] == "rider, owner"
        assert variables["signerAge"] == "13"
        assert variables["signerIsMinor"] == "Yes"

    def test_context_fields(self):
        fields = context_fields({"eventName": "Spring Classic", "horseName": "Comet", "internal": "x"})
        assert {"label": "Event", "value": "Spring Classic"} in fields
        assert {"label": "Horse", "value": "Comet"} in fields
        assert len(fields) == 2


class TestContentResolver:
    @pytest.fixture
    def addendum(self, session):
        row = JurisdictionAddendum(
            tenant_id=TEST_TENANT_ID, jurisdiction_code="US-FL",
            jurisdiction_name="Florida", addendum_html="<p>F.S. 773 notice</p>")
        session.add(row)
        session.commit()
        return row

    def test_addendum_injected_at_placeholder(self, session, addendum):
        base = ContentResolver(session).resolve_base(
            TEST_TENANT_ID, "Waiver", "<p>Top</p>{{jurisdictionAddendum}}<p>Bottom</p>", None, None, "us-fl")
        assert base.content.index("F.S. 773") < base.content.index("Bottom")
        assert base.content.count("F.S. 773") == 1

    def test_addendum_appended_without_placeholder(self, session, addendum):
        base = ContentResolver(session).resolve_base(
            TEST_TENANT_ID, "Waiver", "<p>Body</p>", None, None, "US-FL")
        assert base.content.startswith("<p>Body</p>")
        assert base.content.rstrip().endswith("</div>")
        assert "Florida Legal Notice" in base.content

    def test_unknown_jurisdiction_leaves_body(self, session):
        base = ContentResolver(session).resolve_base(
            TEST_TENANT_ID, "Waiver", "<p>Body</p>", None, None, "US-ZZ")
        assert base.content == "<p>Body</p>"

    def test_template_supplies_body_and_name(self, session):
        session.add(DocumentTemplate(
            tenant_id=TEST_TENANT_ID, template_code="WAIVER-STD", name="Standard Waiver",
            html_content="<p>{{eventName}}</p>", version=3))
        session.commit()

        base = ContentResolver(session).resolve_base(
            TEST_TENANT_ID, None, None, "WAIVER-STD", {"eventName": "Spring Classic"}, None)
        assert base.document_name == "Standard Waiver"
        assert base.content == "<p>Spring Classic</p>"
        assert base.template_version == 3

    def test_unknown_template(self, session):
        with pytest.raises(NotFoundError):
            ContentResolver(session).resolve_base(TEST_TENANT_ID, None, None, "MISSING", None, None)

    def test_document_name_required_without_template(self, session):
        with pytest.raises(ValidationError):
            ContentResolver(session).resolve_base(TEST_TENANT_ID, None, "<p>x</p>", None, None, None)

    def test_signer_pass_does_not_touch_base(self):
        base = "<p>{{signerName}} ({{signerRoles}})</p>"
        first, _ = ContentResolver.resolve_for_signer(base, signer("rider", "Alex Lee"), ["rider"])
        second, _ = ContentResolver.resolve_for_signer(base, signer("trainer", "Bo Chen"), ["trainer"])
        assert first == "<p>Alex Lee (Rider)</p>"
        assert second == "<p>Bo Chen (Trainer)</p>"
        assert "Alex" not in second
