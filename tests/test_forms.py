from __future__ import annotations

from datetime import datetime

import pytest

from church_crm.forms import (
    FormDefinition,
    family_relationship_label,
    save_form,
    submit_registration,
    validate_submission,
)
from church_crm.store import ChurchStore


def _build_store(tmp_path) -> ChurchStore:  # type: ignore[no-untyped-def]
    db_path = tmp_path / "church_crm_test.db"
    store = ChurchStore(db_path)
    store.init_db()
    return store


def _retreat_form() -> FormDefinition:
    definition = FormDefinition(name="Youth Retreat", form_type="registration")
    definition.add_field("text", "First Name", required=True)
    definition.add_field("text", "Last Name", required=True)
    definition.add_field("email", "Email Address", required=True)
    definition.add_field("select", "T-Shirt Size", options=["S", "M", "L"])
    return definition


def test_builder_generates_unique_ids_and_default_options() -> None:
    definition = FormDefinition(name="Volunteer Signup")

    first = definition.add_field("text", "Name")
    second = definition.add_field("text", "Name")
    radio = definition.add_field("radio")

    assert first.id == "name"
    assert second.id == "name_2"
    assert radio.label == "New Radio Buttons"
    assert radio.options == ["Option 1", "Option 2", "Option 3"]

    copy = definition.duplicate_field("name")
    assert [form_field.id for form_field in definition.fields] == ["name", "name_copy", "name_2", "new_radio_buttons"]
    assert copy.label == "Name (Copy)"

    definition.move_field("new_radio_buttons", -10)
    assert definition.fields[0].id == "new_radio_buttons"

    definition.remove_field("name_2")
    with pytest.raises(ValueError):
        definition.get_field("name_2")
    with pytest.raises(ValueError):
        definition.add_field("signature", "Sign here")


def test_templates_and_validation_rules() -> None:
    definition = FormDefinition(name="Fall Festival")
    with pytest.raises(ValueError):
        definition.validate()

    added = definition.apply_template("basic")
    assert added[0].id == "first_name"
    assert added[2].id == "email_address"
    definition.validate()

    with pytest.raises(ValueError):
        definition.apply_template("wedding")

    definition.settings.requires_payment = True
    with pytest.raises(ValueError):
        definition.validate()
    definition.settings.payment_amount_cents = 2500
    definition.settings.max_capacity = 0
    with pytest.raises(ValueError):
        definition.validate()


def test_validate_submission_reports_each_problem() -> None:
    definition = FormDefinition(name="Event")
    definition.apply_template("basic")
    definition.apply_template("event")

    errors = validate_submission(
        definition,
        {
            "first_name": "Ruth",
            "email_address": "not-an-email",
            "phone_number": "555-1234",
            "date_of_birth": "03/04/1990",
            "t_shirt_size": "XXXL",
            "number_of_guests": "two",
        },
    )

    assert errors == [
        "Last Name is required.",
        "Email Address must be a valid email address.",
        "Phone Number must include at least 10 digits.",
        "Date of Birth must be a date (YYYY-MM-DD).",
        "T-Shirt Size must be one of the listed options.",
        "Number of Guests must be a number.",
    ]

    assert validate_submission(
        definition,
        {"first_name": "Ruth", "last_name": "Hale", "email_address": "ruth@example.org"},
    ) == []


def test_saved_form_round_trips_through_the_store(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")
    definition = _retreat_form()
    definition.settings.max_capacity = 40

    form_id = save_form(store, church_id, definition)

    row = store.get_registration_form(form_id)
    assert row["slug"] == "youth-retreat"
    assert row["max_submissions"] == 40
    loaded = FormDefinition.from_record(row)
    assert [form_field.id for form_field in loaded.fields] == ["first_name", "last_name", "email_address", "t_shirt_size"]
    assert loaded.settings.max_capacity == 40
    assert loaded.form_type == "registration"


def test_submit_registration_creates_visitor_and_submission(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")
    form_id = save_form(store, church_id, _retreat_form())

    with pytest.raises(ValueError):
        submit_registration(store, church_id, {"first_name": "Ruth"}, form_id=form_id)
    with pytest.raises(ValueError):
        submit_registration(
            store, church_id, {"first_name": "Ruth", "last_name": "Hale"}, form_id=form_id
        )

    result = submit_registration(
        store,
        church_id,
        {"first_name": "Ruth", "last_name": "Hale", "email_address": "Ruth@Example.org", "t_shirt_size": "M"},
        form_id=form_id,
    )

    assert result["success"] is True
    assert result["status"] == "submitted"
    assert result["message"].endswith("You'll receive a confirmation email shortly.")

    member = store.get_member(result["member_id"])
    assert member["membership_status"] == "Visitor"
    assert member["email"] == "ruth@example.org"

    submission = store.get_submission(result["submission_id"])
    assert submission["submitter_email"] == "ruth@example.org"
    assert submission["submitter_name"] == "Ruth Hale"
    assert submission["is_verified"] == 0
    assert store.get_registration_form(form_id)["current_submissions"] == 1


def test_capacity_closes_form_or_waitlists(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")

    closed = _retreat_form()
    closed.settings.max_capacity = 1
    closed_id = save_form(store, church_id, closed)

    waitlisted = _retreat_form()
    waitlisted.name = "Youth Retreat Waitlist"
    waitlisted.settings.max_capacity = 1
    waitlisted.settings.enable_waitlist = True
    waitlist_id = save_form(store, church_id, waitlisted)

    answers = {"first_name": "Ruth", "last_name": "Hale", "email_address": "ruth@example.org"}
    submit_registration(store, church_id, dict(answers), form_id=closed_id)
    with pytest.raises(ValueError, match="capacity"):
        submit_registration(store, church_id, dict(answers), form_id=closed_id)

    submit_registration(store, church_id, dict(answers), form_id=waitlist_id)
    second = submit_registration(store, church_id, dict(answers), form_id=waitlist_id)
    assert second["status"] == "waitlisted"
    assert store.get_registration_form(waitlist_id)["current_submissions"] == 1


def test_closed_and_inactive_forms_reject_submissions(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")
    form_id = store.add_registration_form(
        church_id,
        "Easter Brunch",
        {"fields": []},
        opens_at=datetime(2026, 3, 1, 8, 0),
        closes_at=datetime(2026, 3, 31, 17, 0),
    )
    answers = {"first_name": "Ruth", "last_name": "Hale"}

    with pytest.raises(ValueError, match="not open yet"):
        submit_registration(store, church_id, answers, form_id=form_id, now=datetime(2026, 2, 20))
    with pytest.raises(ValueError, match="closed"):
        submit_registration(store, church_id, answers, form_id=form_id, now=datetime(2026, 4, 2))

    result = submit_registration(store, church_id, answers, form_id=form_id, now=datetime(2026, 3, 15))
    assert result["message"].endswith("We'll be in touch soon.")

    store.set_form_active(form_id, False)
    with pytest.raises(ValueError, match="no longer accepting"):
        submit_registration(store, church_id, answers, form_id=form_id, now=datetime(2026, 3, 16))

    other_church = store.add_church("Other Church")
    with pytest.raises(ValueError):
        submit_registration(store, other_church, answers, form_id=form_id)


def test_recognized_member_registers_family(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")
    family_id = store.add_family(church_id, "The Okafor Family")
    parent_id = store.add_member(church_id, "Grace", "Okafor", email="grace@example.org", family_id=family_id)
    profile = store.profile_for_member(parent_id)

    result = submit_registration(
        store,
        church_id,
        {"first_name": "Grace", "last_name": "Okafor", "phone": "402-555-0100"},
        recognized_member_id=parent_id,
        recognized_profile_id=profile["id"],
        family_members=[
            {"first_name": "Tobi", "last_name": "Okafor", "relationship": "Child", "date_of_birth": "2015-09-01"},
            {"first_name": "Ada", "last_name": "Okafor", "relationship": "Child"},
        ],
    )

    assert result["member_id"] == parent_id
    assert result["message"].endswith("We've also registered 2 family members with you.")
    assert [entry["name"] for entry in result["family_registrations"]] == ["Tobi Okafor", "Ada Okafor"]

    parent = store.get_member(parent_id)
    assert parent["membership_status"] == "Active"
    assert parent["mobile_phone"] == "402-555-0100"

    submission = store.get_submission(result["submission_id"])
    assert submission["submission_type"] == "family"
    assert submission["is_verified"] == 1
    assert submission["person_profile_id"] == profile["id"]
    assert submission["family_id"] == family_id

    household = store.family_members(family_id, active_only=False)
    assert len(household) == 3
    assert store.list_submissions(church_id)[0]["family_member_count"] == 2


def test_confirm_new_profile_ignores_recognized_member(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")
    existing_id = store.add_member(church_id, "Sam", "Lee", email="sam@example.org")

    result = submit_registration(
        store,
        church_id,
        {"first_name": "Sam", "last_name": "Lee", "email": "sam.lee@example.org"},
        recognized_member_id=existing_id,
        confirm_new_profile=True,
    )

    assert result["member_id"] != existing_id
    assert store.get_member(existing_id)["email"] == "sam@example.org"


def test_family_relationship_labels(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")
    head_id = store.add_member(church_id, "Dana", "Cole", marital_status="Married", is_head_of_household=True)
    spouse_id = store.add_member(church_id, "Lee", "Cole", marital_status="Married")
    child_id = store.add_member(church_id, "Kit", "Cole", is_minor=True)
    other_id = store.add_member(church_id, "Pat", "Cole")

    assert family_relationship_label(store.get_member(head_id)) == "Head of Household"
    assert family_relationship_label(store.get_member(spouse_id), "Married") == "Spouse"
    assert family_relationship_label(store.get_member(child_id), "Married") == "Child"
    assert family_relationship_label(store.get_member(other_id), "Married") == "Other"
