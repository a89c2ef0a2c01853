from __future__ import annotations

from datetime import date, datetime

import pytest

from church_crm.store import ChurchStore, month_bounds


def _build_store(tmp_path) -> ChurchStore:  # type: ignore[no-untyped-def]
    db_path = tmp_path / "church_crm_test.db"
    store = ChurchStore(db_path)
    store.init_db()
    return store


def test_add_church_seeds_funds_and_default_giving_form(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)

    church_id = store.add_church("Grace Community Church")

    church = store.get_church(church_id)
    assert church["slug"] == "grace-community-church"
    assert church["timezone"] == "America/New_York"

    names = [row["name"] for row in store.list_categories(church_id)]
    assert names == ["Tithe", "Offering", "Missions", "Building", "Other"]

    form = store.get_donation_form("grace-community-church")
    assert form is not None
    assert form["name"] == "General Giving"
    assert form["church_name"] == "Grace Community Church"
    assert len(form["categories"]) == 5
    assert [row["is_default"] for row in form["categories"]][0] == 1

    assert store.get_donation_form("grace-community-church", "missing") is None
    assert store.get_donation_form("unknown-church") is None


def test_add_church_rejects_bad_and_duplicate_slugs(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)

    with pytest.raises(ValueError):
        store.add_church("")
    with pytest.raises(ValueError):
        store.add_church("First Baptist", slug="First Baptist!")

    store.add_church("First Baptist", slug="first-baptist")
    with pytest.raises(ValueError):
        store.add_church("First Baptist Downtown", slug="first-baptist")


def test_add_member_creates_verified_profile_and_preferences(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")

    with pytest.raises(ValueError):
        store.add_member(church_id, first_name="", last_name="Mills")
    with pytest.raises(ValueError):
        store.add_member(church_id, first_name="Avery", last_name="Mills", membership_status="Unknown")
    with pytest.raises(ValueError):
        store.add_member(church_id, first_name="Avery", last_name="Mills", favorite_color="blue")

    member_id = store.add_member(
        church_id,
        first_name="Avery",
        last_name="Mills",
        email=" Avery@Example.org ",
        mobile_phone="(555) 123-4567",
        date_of_birth=date(1988, 4, 2),
    )

    member = store.get_member(member_id)
    assert member["email"] == "avery@example.org"
    assert member["date_of_birth"] == "1988-04-02"

    profile = store.profile_for_member(member_id)
    assert profile["profile_status"] == "verified"
    assert profile["confidence_score"] == 100
    assert profile["phone"] == "+15551234567"

    preferences = store.get_preferences(member_id)
    assert preferences["email_opt_in"] == 1
    assert preferences["sms_opt_in"] == 0


def test_update_member_keeps_profile_in_sync(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")
    member_id = store.add_member(church_id, "Jordan", "Reyes", email="jordan@example.org")

    store.update_member(member_id, email="JR@Example.org", mobile_phone="555 987 6543", city="Lincoln")

    profile = store.profile_for_member(member_id)
    assert profile["email"] == "jr@example.org"
    assert profile["phone"] == "+15559876543"
    assert profile["city"] == "Lincoln"

    with pytest.raises(ValueError):
        store.update_member(member_id, last_name="")
    with pytest.raises(ValueError):
        store.update_member(999, first_name="Nobody")


def test_smart_search_matches_nicknames(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")

    william_id = store.add_member(church_id, "William", "Turner", email="wturner@example.org")
    store.add_member(church_id, "Wilma", "Stone", email="wilma@example.org")

    default_matches = store.list_members(church_id, search_term="Bill")
    assert all(row["id"] != william_id for row in default_matches)

    smart_matches = store.list_members(church_id, search_term="Bill", smart_search=True)
    assert smart_matches[0]["id"] == william_id


def test_members_are_scoped_to_their_church(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    first_church = store.add_church("North Campus")
    second_church = store.add_church("South Campus")

    store.add_member(first_church, "Casey", "Lee")
    store.add_member(second_church, "Casey", "Lee")

    assert len(store.list_members(first_church)) == 1
    assert len(store.list_members(second_church)) == 1
    assert store.church_stats(first_church)["total_members"] == 1

    other_family = store.add_family(second_church, "The Lee Family")
    member_id = store.list_members(first_church)[0]["id"]
    with pytest.raises(ValueError):
        store.assign_member_to_family(member_id, other_family)


def test_family_membership_and_head_of_household(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")
    family_id = store.add_family(church_id, "The Johnson Family", city="Omaha")

    with pytest.raises(ValueError):
        store.add_family(church_id, "  ")

    head_id = store.add_member(church_id, "Dana", "Johnson", marital_status="Married")
    child_id = store.add_member(church_id, "Riley", "Johnson", is_minor=True, date_of_birth="2012-06-01")

    store.assign_member_to_family(head_id, family_id, is_head_of_household=True)
    store.assign_member_to_family(child_id, family_id)

    families = store.list_families(church_id)
    assert families[0]["member_count"] == 2
    assert families[0]["head_of_household"] == "Dana Johnson"

    household = store.family_members(family_id)
    assert [row["id"] for row in household] == [head_id, child_id]
    assert store.profile_for_member(child_id)["family_id"] == family_id

    store.assign_member_to_family(head_id, None, is_head_of_household=True)
    assert store.get_member(head_id)["is_head_of_household"] == 0


def test_custom_fields_round_trip(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")
    member_id = store.add_member(church_id, "Sam", "Ortiz")

    store.set_custom_field(member_id, "Small Group", "Tuesday Men")
    store.set_custom_field(member_id, "Volunteer Hours", 12)
    store.remove_custom_field(member_id, "Small Group")

    member = store.get_member(member_id)
    assert '"Volunteer Hours": 12' in member["custom_fields"]
    assert "Small Group" not in member["custom_fields"]

    with pytest.raises(ValueError):
        store.set_custom_field(member_id, " ", "x")


def test_convert_visitor_and_merge_members(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")

    visitor_id = store.add_member(church_id, "Taylor", "Brooks", membership_status="Visitor", membership_role="Visitor")
    store.convert_visitor_to_member(visitor_id, today=date(2026, 3, 1))
    visitor = store.get_member(visitor_id)
    assert visitor["membership_status"] == "Active"
    assert visitor["join_date"] == "2026-03-01"

    duplicate_id = store.add_member(church_id, "Taylor", "Brooks", email="taylor@example.org")
    matches = store.search_potential_matches(church_id, first_name="Taylor", last_name="Brooks")
    assert {row["id"] for row in matches} == {visitor_id, duplicate_id}

    with pytest.raises(ValueError):
        store.merge_members(visitor_id, visitor_id)

    store.merge_members(visitor_id, duplicate_id, today=date(2026, 3, 2))
    assert store.get_member(visitor_id)["email"] == "taylor@example.org"
    merged = store.get_member(duplicate_id)
    assert merged["membership_status"] == "Merged"
    assert merged["inactive_reason"] == f"Merged into profile {visitor_id}"


def test_manual_donation_validation_and_anonymity(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")
    tithe_id = store.list_categories(church_id)[0]["id"]

    with pytest.raises(ValueError):
        store.add_manual_donation(church_id, tithe_id, 0, "cash", donor_name="Avery")
    with pytest.raises(ValueError):
        store.add_manual_donation(church_id, tithe_id, 2500, "cash", donor_name="")
    with pytest.raises(ValueError):
        store.add_manual_donation(church_id, tithe_id, 2500, "check", donor_name="Avery")
    with pytest.raises(ValueError):
        store.add_manual_donation(church_id, tithe_id, 2500, "bitcoin", donor_name="Avery")

    other_church = store.add_church("Other Church")
    other_category = store.list_categories(other_church)[0]["id"]
    with pytest.raises(ValueError):
        store.add_manual_donation(church_id, other_category, 2500, "cash", donor_name="Avery")

    donation_id = store.add_manual_donation(
        church_id,
        tithe_id,
        5000,
        "cash",
        donor_name="Hidden Giver",
        donor_email="hidden@example.org",
        is_anonymous=True,
    )
    donation = store.get_donation(donation_id)
    assert donation["status"] == "completed"
    assert donation["donor_name"] is None
    assert donation["donor_email"] is None
    assert donation["net_amount_cents"] == 5000


def test_giving_stats_and_monthly_totals(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")
    categories = store.list_categories(church_id)
    tithe_id = categories[0]["id"]
    missions_id = categories[2]["id"]
    member_id = store.add_member(church_id, "Avery", "Mills")

    store.add_manual_donation(
        church_id, tithe_id, 10000, "check", donor_name="Avery Mills",
        check_number="1001", donation_date=date(2026, 3, 8), member_id=member_id,
    )
    store.add_manual_donation(
        church_id, missions_id, 2500, "cash", donor_name="Jordan Reyes", donation_date=date(2026, 2, 14),
    )
    store.insert_donation(
        church_id=church_id,
        category_id=tithe_id,
        amount_cents=4000,
        payment_method="card",
        status="pending",
        donation_date=date(2026, 3, 9),
        processor="stripe",
        processor_transaction_id="pi_pending",
    )

    stats = store.giving_stats(church_id, today=date(2026, 3, 15))
    assert stats["ytd_total_cents"] == 12500
    assert stats["ytd_gift_count"] == 2
    assert stats["month_total_cents"] == 10000
    assert stats["month_gift_count"] == 1
    assert stats["pending_count"] == 1
    assert stats["ytd_donor_count"] == 2

    months = store.donations_by_month(church_id, months=3, today=date(2026, 3, 15))
    assert months == [
        {"month_key": "2026-01", "total_cents": 0},
        {"month_key": "2026-02", "total_cents": 2500},
        {"month_key": "2026-03", "total_cents": 10000},
    ]

    by_category = {row["category_name"]: row["total_cents"] for row in store.giving_by_category(church_id, 2026)}
    assert by_category["Tithe"] == 10000
    assert by_category["Missions"] == 2500

    history = store.list_donations(church_id, member_id=member_id)
    assert [row["amount_cents"] for row in history] == [10000]


def test_donation_splits_cannot_exceed_total(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")
    categories = store.list_categories(church_id)
    donation_id = store.add_manual_donation(church_id, categories[0]["id"], 10000, "cash", donor_name="Avery")

    store.add_donation_split(donation_id, categories[0]["id"], 6000)
    store.add_donation_split(donation_id, categories[2]["id"], 4000)
    with pytest.raises(ValueError):
        store.add_donation_split(donation_id, categories[3]["id"], 1)

    splits = store.list_donation_splits(donation_id)
    assert [row["category_name"] for row in splits] == ["Tithe", "Missions"]


def test_update_donation_payment_by_intent(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")
    tithe_id = store.list_categories(church_id)[0]["id"]
    donation_id = store.insert_donation(
        church_id=church_id,
        category_id=tithe_id,
        amount_cents=5000,
        payment_method="card",
        status="pending",
        donation_date=date(2026, 3, 1),
        processor="stripe",
        processor_transaction_id="pi_123",
    )

    assert store.update_donation_payment("pi_123", "completed", processor_fee_cents=175,
                                         processor_customer_id="cus_9", processed_at=datetime(2026, 3, 1, 9, 30))
    donation = store.get_donation(donation_id)
    assert donation["status"] == "completed"
    assert donation["net_amount_cents"] == 4825
    assert donation["processor_customer_id"] == "cus_9"
    assert donation["processed_at"] == "2026-03-01 09:30:00"

    assert store.update_donation_payment("pi_missing", "failed") is False
    with pytest.raises(ValueError):
        store.update_donation_payment("pi_123", "lost")


def test_form_capacity_counter_skips_waitlisted(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")
    form_id = store.add_registration_form(
        church_id,
        "Youth Retreat",
        {"fields": []},
        form_type="registration",
        settings={"max_capacity": 1, "enable_waitlist": True},
    )

    with pytest.raises(ValueError):
        store.add_registration_form(church_id, "Youth Retreat", {"fields": []})
    with pytest.raises(ValueError):
        store.add_registration_form(
            church_id, "Bad Window", {"fields": []},
            opens_at=datetime(2026, 5, 2), closes_at=datetime(2026, 5, 1),
        )

    store.add_form_submission(church_id, form_id, {"first_name": "A", "last_name": "B"}, None, None)
    store.add_form_submission(
        church_id, form_id, {"first_name": "C", "last_name": "D"}, None, None, status="waitlisted"
    )

    form = store.get_registration_form(form_id)
    assert form["current_submissions"] == 1
    assert form["max_submissions"] == 1
    assert len(store.list_submissions(church_id, form_id=form_id)) == 2


def test_communication_settings_validate_quiet_hours(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")

    assert store.get_communication_settings(church_id) is None
    with pytest.raises(ValueError):
        store.save_communication_settings(church_id, sms_quiet_hours_start="9pm")
    with pytest.raises(ValueError):
        store.save_communication_settings(church_id, favorite_provider="pigeon")

    store.save_communication_settings(church_id, from_name="Hope Chapel", enable_two_way_sms=True)
    settings = store.get_communication_settings(church_id)
    assert settings["from_name"] == "Hope Chapel"
    assert settings["enable_two_way_sms"] == 1
    assert settings["sms_quiet_hours_start"] == "21:00"


def test_dashboard_stats_combine_people_giving_and_inbox(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")
    store.add_family(church_id, "The Lee Family")
    store.add_member(church_id, "Casey", "Lee")
    store.add_member(church_id, "Morgan", "Hale", membership_status="Visitor")

    conversation = store.get_or_create_conversation(church_id, "+15550001111", "+15559990000")
    store.add_sms_message(conversation["id"], "inbound", "Hi", "+15550001111", "+15559990000", "received", unread=True)

    stats = store.dashboard_stats(church_id, today=date(2026, 3, 15))
    assert stats["total_members"] == 2
    assert stats["visitors"] == 1
    assert stats["families_total"] == 1
    assert stats["unread_conversations"] == 1
    assert stats["pending_reviews"] == 0
    assert stats["ytd_total_cents"] == 0


def test_month_bounds_handles_december() -> None:
    bounds = month_bounds(date(2026, 12, 9))
    assert bounds.start == date(2026, 12, 1)
    assert bounds.end == date(2026, 12, 31)


def test_message_templates_are_typed_and_sorted(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    church_id = store.add_church("Hope Chapel")

    with pytest.raises(ValueError):
        store.add_message_template(church_id, "Reminder", "fax", "Hi")
    with pytest.raises(ValueError):
        store.add_message_template(church_id, "Reminder", "sms", "   ")

    store.add_message_template(church_id, "Welcome", "email", "Hi {{firstName}}", subject="Welcome!")
    store.add_message_template(church_id, "Reminder", "sms", "Service at 10am. Reply STOP to opt out.")
    store.add_message_template(church_id, "Announcement", "email", "News for {{firstName}}")

    assert [row["name"] for row in store.list_message_templates(church_id)] == ["Announcement", "Reminder", "Welcome"]
    assert [row["name"] for row in store.list_message_templates(church_id, template_type="email")] == [
        "Announcement",
        "Welcome",
    ]
