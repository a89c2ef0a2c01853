"""Streamlit app for church membership, giving, forms, and communication."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Iterable

import pandas as pd
import streamlit as st

from church_crm import (
    ChurchStore,
    ComplianceManager,
    FormDefinition,
    MessageDispatcher,
    ProgressiveRecognition,
    RateLimitExceeded,
    SmsInbox,
    StripeGateway,
    cents_from_amount,
    configure_logging,
    create_online_donation,
    format_currency,
    load_settings,
    member_display_name,
    providers_for_church,
    save_form,
    submit_registration,
)
from church_crm.compliance import CONSENT_METHODS
from church_crm.forms import (
    BRAND_COLORS,
    FIELD_TEMPLATES,
    FIELD_TYPE_LABELS,
    FIELD_TYPES,
    FORM_TYPES,
    family_relationship_label,
)
from church_crm.messaging import estimate_sms_cost, extract_merge_fields, sms_segments
from church_crm.privacy import display_mask_email, display_mask_phone
from church_crm.providers import dns_records
from church_crm.rate_limit import admin_action_limiter, client_identifier, recognition_limiter
from church_crm.store import MEMBERSHIP_ROLES, MEMBERSHIP_STATUSES, PAYMENT_METHODS, json_field


RECIPIENT_TYPE_LABELS = {
    "all_members": "All Members",
    "active_members": "Active Members",
    "visitors": "Visitors",
    "custom_selection": "Custom Selection",
}
MARITAL_STATUSES = ["", "Single", "Married", "Divorced", "Widowed"]
REVIEW_ACTIONS = (("approve", "approved"), ("merge", "merged"), ("reject", "rejected"))

SETTINGS = load_settings()
configure_logging(SETTINGS.log_level)

DB_PATH = SETTINGS.db_path
STORE = ChurchStore(DB_PATH)
COMPLIANCE = ComplianceManager(STORE)
RECOGNITION = ProgressiveRecognition(STORE, limiter=recognition_limiter)
GATEWAY = StripeGateway(SETTINGS.stripe_secret_key, SETTINGS.stripe_webhook_secret)
ADMIN_CLIENT_ID = client_identifier("127.0.0.1", "streamlit-admin")


def _inject_styles() -> None:
    st.markdown(
        """
        <style>
          @import url('https://fonts.googleapis.com/css2?family=Space+Grotesk:wght@500;700&family=Public+Sans:wght@400;500;600;700&display=swap');

          :root {
            --cc-plum-700: #3b1f5c;
            --cc-plum-600: #5b3a8c;
            --cc-plum-500: #6d4aa8;
            --cc-sand-100: #f6f3ee;
            --cc-sand-200: #efe9f5;
            --cc-card: #ffffff;
            --cc-text: #1d1b20;
            --cc-muted: #4a4550;
          }

          .stApp {
            background:
              radial-gradient(circle at 88% -15%, rgba(91, 58, 140, 0.16), transparent 30%),
              linear-gradient(170deg, var(--cc-sand-100) 0%, var(--cc-sand-200) 60%, #fbf9ff 100%);
            color: var(--cc-text);
          }

          html, body, [class*="css"] {
            font-family: "Public Sans", "Trebuchet MS", sans-serif;
          }

          .block-container {
            padding-top: 1.1rem;
            padding-bottom: 1.8rem;
          }

          .crm-hero {
            background: linear-gradient(124deg, var(--cc-plum-700), var(--cc-plum-600));
            border-radius: 18px;
            color: #ffffff;
            padding: 1.2rem 1.25rem;
            box-shadow: 0 16px 30px rgba(59, 31, 92, 0.28);
            margin-bottom: 1rem;
          }

          .crm-hero,
          .crm-hero h1,
          .crm-hero p {
            color: #ffffff !important;
          }

          .crm-hero h1 {
            margin: 0;
            font-family: "Space Grotesk", "Arial Black", sans-serif;
            font-size: clamp(1.45rem, 2.6vw, 2.2rem);
            line-height: 1.2;
          }

          .crm-hero p {
            margin: 0.55rem 0 0;
            max-width: 78ch;
            font-weight: 500;
            opacity: 0.93;
          }

          .metric-card {
            border-radius: 14px;
            border: 1px solid rgba(201, 199, 197, 0.6);
            background: var(--cc-card);
            box-shadow: 0 6px 14px rgba(24, 24, 24, 0.06);
            padding: 0.75rem 0.8rem;
            min-height: 108px;
          }

          .metric-label {
            margin: 0;
            color: var(--cc-muted);
            font-weight: 600;
            font-size: 0.84rem;
          }

          .metric-value {
            margin: 0.3rem 0 0;
            color: var(--cc-plum-700);
            font-family: "Space Grotesk", "Arial Black", sans-serif;
            font-size: 1.45rem;
            line-height: 1.1;
          }

          .metric-sub {
            margin: 0.4rem 0 0;
            color: #5a5a58;
            font-size: 0.82rem;
            font-weight: 500;
          }

          .section-note {
            color: #555453;
            font-weight: 500;
            margin-top: -0.2rem;
            margin-bottom: 0.8rem;
          }

          .sms-bubble {
            border-radius: 12px;
            padding: 0.45rem 0.7rem;
            margin: 0.25rem 0;
            max-width: 80%;
          }

          .sms-inbound {
            background: #ffffff;
            border: 1px solid #ddd6e8;
          }

          .sms-outbound {
            background: var(--cc-plum-500);
            color: #ffffff;
            margin-left: auto;
          }

          .stButton > button {
            background: linear-gradient(120deg, var(--cc-plum-500), var(--cc-plum-600));
            color: #ffffff;
            border: 1px solid var(--cc-plum-700);
            border-radius: 0.6rem;
            font-weight: 600;
          }

          button[data-baseweb="tab"][aria-selected="true"] {
            color: var(--cc-plum-700);
          }
        </style>
        """,
        unsafe_allow_html=True,
    )


def _render_metric_card(title: str, value: str, subtitle: str) -> None:
    st.markdown(
        f"""
        <div class="metric-card">
          <p class="metric-label">{title}</p>
          <p class="metric-value">{value}</p>
          <p class="metric-sub">{subtitle}</p>
        </div>
        """,
        unsafe_allow_html=True,
    )


def _hero(church_name: str) -> None:
    st.markdown(
        f"""
        <div class="crm-hero">
          <h1>{church_name}</h1>
          <p>
            People, households, giving, registration forms, and two-way messaging in one workspace.
            Returning visitors are recognized from their form details and routed for confirmation or review.
          </p>
        </div>
        """,
        unsafe_allow_html=True,
    )


def _member_option_label(row: dict) -> str:
    return f"{member_display_name(row)} (#{row['id']})"


def _conversation_label(row: dict) -> str:
    name = member_display_name(row) if row.get("first_name") else row["member_phone"]
    return f"{name} ({row['unread_count']} unread)"


def _table_or_info(frame: pd.DataFrame, empty_message: str) -> None:
    if frame.empty:
        st.info(empty_message)
        return
    st.dataframe(frame, use_container_width=True, hide_index=True)


def _rows_to_dicts(rows: Iterable) -> list[dict]:
    return [dict(row) for row in rows]


def _blank_to_none(value: str) -> str | None:
    return value.strip() or None


def _select_church() -> int:
    churches = _rows_to_dicts(STORE.list_churches())

    with st.sidebar:
        st.markdown("### Church")
        with st.expander("Add a church", expanded=not churches):
            with st.form("church-create-form", clear_on_submit=True):
                name = st.text_input("Church Name *")
                slug = st.text_input("URL Slug", placeholder="grace-community")
                email = st.text_input("Office Email")
                phone = st.text_input("Office Phone")
                timezone = st.text_input("Timezone", value="America/New_York")
                if st.form_submit_button("Create Church", use_container_width=True):
                    try:
                        STORE.add_church(
                            name=name,
                            slug=_blank_to_none(slug),
                            email=_blank_to_none(email),
                            phone=_blank_to_none(phone),
                            timezone=timezone.strip() or "America/New_York",
                        )
                        st.success("Church created.")
                        st.rerun()
                    except ValueError as exc:
                        st.error(str(exc))

        if not churches:
            st.info("Create a church to get started.")
            st.stop()

        church_map = {row["id"]: row for row in churches}
        selected = st.selectbox(
            "Workspace",
            options=list(church_map.keys()),
            format_func=lambda church_id: church_map[church_id]["name"],
        )
        st.caption(f"Giving page: {SETTINGS.base_url}/give/{church_map[selected]['slug']}")
    return int(selected)


def render_dashboard(church_id: int) -> None:
    stats = STORE.dashboard_stats(church_id)
    metric_columns = st.columns(6)

    with metric_columns[0]:
        _render_metric_card("Members", str(stats["total_members"]), f"{stats['active_members']} active")
    with metric_columns[1]:
        _render_metric_card("Visitors", str(stats["visitors"]), "Ready for follow-up")
    with metric_columns[2]:
        _render_metric_card("Families", str(stats["families_total"]), "Households on file")
    with metric_columns[3]:
        _render_metric_card(
            "This Month Giving",
            format_currency(stats["month_total_cents"]),
            f"{stats['month_gift_count']} completed gifts",
        )
    with metric_columns[4]:
        _render_metric_card(
            "Year-to-Date",
            format_currency(stats["ytd_total_cents"]),
            f"{stats['ytd_donor_count']} identified givers",
        )
    with metric_columns[5]:
        _render_metric_card(
            "Needs Attention",
            str(stats["pending_reviews"] + stats["unread_conversations"]),
            f"{stats['pending_reviews']} reviews, {stats['unread_conversations']} unread texts",
        )

    left, right = st.columns([1.3, 1], gap="large")
    monthly_df = pd.DataFrame(STORE.donations_by_month(church_id, months=12))
    with left:
        st.markdown("#### Giving by Month")
        if monthly_df.empty or int(monthly_df["total_cents"].sum()) == 0:
            st.info("No completed gifts yet.")
        else:
            monthly_df["month"] = pd.to_datetime(monthly_df["month_key"] + "-01")
            monthly_df["amount"] = monthly_df["total_cents"] / 100
            st.bar_chart(monthly_df.set_index("month")["amount"], color="#5B3A8C")

    with right:
        st.markdown("#### Recent Form Submissions")
        submissions = _rows_to_dicts(STORE.list_submissions(church_id, limit=8))
        submissions_df = pd.DataFrame(
            [
                {
                    "Submitted": row["submitted_at"],
                    "Form": row.get("form_name") or "-",
                    "Status": row["status"],
                    "Verified": "Yes" if row["is_verified"] else "No",
                }
                for row in submissions
            ]
        )
        _table_or_info(submissions_df, "No submissions yet.")


def render_people_tab(church_id: int) -> None:
    st.markdown("### People")
    st.markdown(
        "<p class='section-note'>Member directory with smart search, custom fields, and duplicate merging.</p>",
        unsafe_allow_html=True,
    )

    families = _rows_to_dicts(STORE.list_families(church_id))
    family_options = {None: "No family"} | {row["id"]: row["family_name"] for row in families}

    left, right = st.columns([1, 1.4], gap="large")
    with left:
        st.markdown("#### Add Person")
        with st.form("member-create-form", clear_on_submit=True):
            first_name = st.text_input("First Name *")
            last_name = st.text_input("Last Name *")
            preferred_name = st.text_input("Preferred Name")
            email = st.text_input("Email")
            mobile_phone = st.text_input("Mobile Phone")
            membership_status = st.selectbox("Status", MEMBERSHIP_STATUSES[:5])
            membership_role = st.selectbox("Role", MEMBERSHIP_ROLES)
            marital_status = st.selectbox("Marital Status", MARITAL_STATUSES)
            family_id = st.selectbox(
                "Family",
                options=list(family_options.keys()),
                format_func=lambda key: family_options[key],
            )
            is_head = st.checkbox("Head of household")
            notes = st.text_area("Notes", height=90)

            if st.form_submit_button("Add Person", use_container_width=True):
                try:
                    STORE.add_member(
                        church_id=church_id,
                        first_name=first_name,
                        last_name=last_name,
                        email=_blank_to_none(email),
                        mobile_phone=_blank_to_none(mobile_phone),
                        membership_status=membership_status,
                        membership_role=membership_role,
                        family_id=family_id,
                        preferred_name=_blank_to_none(preferred_name),
                        marital_status=marital_status or None,
                        is_head_of_household=is_head,
                        join_date=date.today() if membership_status == "Active" else None,
                        notes=_blank_to_none(notes),
                    )
                    st.success("Person added.")
                    st.rerun()
                except ValueError as exc:
                    st.error(str(exc))

    with right:
        filters = st.columns([2, 1, 1])
        with filters[0]:
            search_term = st.text_input("Search People", placeholder="Name, email, or phone")
        with filters[1]:
            status_filter = st.selectbox("Status Filter", ["All", *MEMBERSHIP_STATUSES])
        with filters[2]:
            role_filter = st.selectbox("Role Filter", ["All", *MEMBERSHIP_ROLES])

        member_rows = _rows_to_dicts(
            STORE.list_members(
                church_id,
                search_term=search_term,
                status=None if status_filter == "All" else status_filter,
                role=None if role_filter == "All" else role_filter,
                smart_search=True,
            )
        )
        directory_df = pd.DataFrame(
            [
                {
                    "ID": row["id"],
                    "Name": member_display_name(row),
                    "Status": row["membership_status"],
                    "Role": row["membership_role"],
                    "Family": row.get("family_name") or "-",
                    "Email": row.get("email") or "-",
                    "Phone": row.get("mobile_phone") or "-",
                    "Lifetime Giving": format_currency(int(row["total_given_cents"])),
                }
                for row in member_rows
            ]
        )
        _table_or_info(directory_df, "No people yet. Add your first member or visitor.")

        if member_rows:
            member_map = {row["id"]: row for row in member_rows}
            selected_id = st.selectbox(
                "Open Person",
                options=list(member_map.keys()),
                format_func=lambda member_id: _member_option_label(member_map[member_id]),
            )
            _render_member_detail(church_id, int(selected_id))


def _render_member_detail(church_id: int, member_id: int) -> None:
    member = STORE.get_member(member_id)
    if member is None:
        return
    selected = dict(member)

    profile_cols = st.columns(3)
    with profile_cols[0]:
        st.metric("Status", selected["membership_status"])
    with profile_cols[1]:
        st.metric("Family", selected.get("family_name") or "-")
    with profile_cols[2]:
        st.metric("Joined", selected.get("join_date") or "-")

    actions = st.columns(3)
    with actions[0]:
        if selected["membership_status"] == "Visitor" and st.button("Convert to Member", key=f"convert-{member_id}"):
            STORE.convert_visitor_to_member(member_id)
            st.success("Visitor converted to member.")
            st.rerun()
    with actions[1]:
        new_status = st.selectbox(
            "Change Status",
            MEMBERSHIP_STATUSES[:5],
            index=list(MEMBERSHIP_STATUSES).index(selected["membership_status"])
            if selected["membership_status"] in MEMBERSHIP_STATUSES[:5]
            else 0,
            key=f"status-{member_id}",
        )
        if new_status != selected["membership_status"] and st.button("Save Status", key=f"save-status-{member_id}"):
            STORE.update_member(member_id, membership_status=new_status)
            st.rerun()
    with actions[2]:
        if st.button("Delete Person", key=f"delete-{member_id}"):
            STORE.delete_member(member_id)
            st.success("Person deleted.")
            st.rerun()

    st.markdown("##### Custom Fields")
    custom_fields = json_field(selected.get("custom_fields"), {})
    if custom_fields:
        st.dataframe(
            pd.DataFrame([{"Field": key, "Value": value} for key, value in custom_fields.items()]),
            use_container_width=True,
            hide_index=True,
        )
    with st.form(f"custom-field-form-{member_id}", clear_on_submit=True):
        field_cols = st.columns(2)
        with field_cols[0]:
            field_key = st.text_input("Field Name")
        with field_cols[1]:
            field_value = st.text_input("Value")
        if st.form_submit_button("Save Field"):
            try:
                STORE.set_custom_field(member_id, field_key, field_value)
                st.rerun()
            except ValueError as exc:
                st.error(str(exc))

    st.markdown("##### Giving History")
    donations = _rows_to_dicts(STORE.list_donations(church_id, member_id=member_id, limit=25))
    history_df = pd.DataFrame(
        [
            {
                "Date": row["donation_date"],
                "Fund": row["category_name"],
                "Amount": format_currency(int(row["amount_cents"])),
                "Method": row["payment_method"],
                "Status": row["status"],
            }
            for row in donations
        ]
    )
    _table_or_info(history_df, "No gifts recorded for this person.")

    st.markdown("##### Possible Duplicates")
    matches = [
        row
        for row in _rows_to_dicts(
            STORE.search_potential_matches(
                church_id,
                email=selected.get("email"),
                phone=selected.get("mobile_phone"),
                first_name=selected["first_name"],
                last_name=selected["last_name"],
            )
        )
        if row["id"] != member_id
    ]
    if not matches:
        st.caption("No likely duplicates found.")
        return
    match_map = {row["id"]: row for row in matches}
    duplicate_id = st.selectbox(
        "Merge into this person",
        options=list(match_map.keys()),
        format_func=lambda key: _member_option_label(match_map[key]),
        key=f"duplicate-{member_id}",
    )
    if st.button("Merge Duplicate", key=f"merge-{member_id}"):
        try:
            STORE.merge_members(member_id, int(duplicate_id))
            st.success("Records merged.")
            st.rerun()
        except ValueError as exc:
            st.error(str(exc))


def render_families_tab(church_id: int) -> None:
    st.markdown("### Families")
    left, right = st.columns([1, 1.4], gap="large")

    with left:
        with st.form("family-create-form", clear_on_submit=True):
            family_name = st.text_input("Family Name *", placeholder="The Johnson Family")
            address = st.text_input("Address")
            city = st.text_input("City")
            state = st.text_input("State")
            zip_code = st.text_input("Zip Code")
            home_phone = st.text_input("Home Phone")
            if st.form_submit_button("Create Family", use_container_width=True):
                try:
                    STORE.add_family(
                        church_id=church_id,
                        family_name=family_name,
                        address=_blank_to_none(address),
                        city=_blank_to_none(city),
                        state=_blank_to_none(state),
                        zip_code=_blank_to_none(zip_code),
                        home_phone=_blank_to_none(home_phone),
                    )
                    st.success("Family created.")
                    st.rerun()
                except ValueError as exc:
                    st.error(str(exc))

    with right:
        families = _rows_to_dicts(STORE.list_families(church_id))
        families_df = pd.DataFrame(
            [
                {
                    "Family": row["family_name"],
                    "Head of Household": row.get("head_of_household") or "-",
                    "Members": int(row["member_count"]),
                    "City": row.get("city") or "-",
                }
                for row in families
            ]
        )
        _table_or_info(families_df, "No families yet.")
        if not families:
            return

        family_map = {row["id"]: row for row in families}
        family_id = st.selectbox(
            "Open Family",
            options=list(family_map.keys()),
            format_func=lambda key: family_map[key]["family_name"],
        )
        household = _rows_to_dicts(STORE.family_members(int(family_id)))
        head = next((row for row in household if row["is_head_of_household"]), None)
        head_marital = head["marital_status"] if head else None
        household_df = pd.DataFrame(
            [
                {
                    "Name": member_display_name(row),
                    "Relationship": family_relationship_label(row, head_marital),
                    "Status": row["membership_status"],
                }
                for row in household
            ]
        )
        _table_or_info(household_df, "No one assigned to this family yet.")

        unassigned = _rows_to_dicts(
            row for row in STORE.list_members(church_id) if row["family_id"] is None
        )
        if unassigned:
            member_map = {row["id"]: row for row in unassigned}
            with st.form("family-assign-form", clear_on_submit=True):
                member_id = st.selectbox(
                    "Add Person",
                    options=list(member_map.keys()),
                    format_func=lambda key: _member_option_label(member_map[key]),
                )
                as_head = st.checkbox("Head of household")
                if st.form_submit_button("Add to Family"):
                    STORE.assign_member_to_family(int(member_id), int(family_id), is_head_of_household=as_head)
                    st.rerun()


def render_giving_tab(church_id: int) -> None:
    st.markdown("### Giving")
    stats = STORE.giving_stats(church_id)
    metric_cols = st.columns(4)
    with metric_cols[0]:
        st.metric("Year-to-Date", format_currency(stats["ytd_total_cents"]))
    with metric_cols[1]:
        st.metric("This Month", format_currency(stats["month_total_cents"]))
    with metric_cols[2]:
        st.metric("Processing Fees", format_currency(stats["ytd_fees_cents"]))
    with metric_cols[3]:
        st.metric("Pending Online Gifts", str(stats["pending_count"]))

    categories = _rows_to_dicts(STORE.list_categories(church_id))
    category_map = {row["id"]: row["name"] for row in categories}
    members = _rows_to_dicts(STORE.list_members(church_id))
    member_options = {None: "Not linked"} | {row["id"]: member_display_name(row) for row in members}

    manual_col, online_col = st.columns(2, gap="large")
    with manual_col:
        st.markdown("#### Record a Gift")
        with st.form("manual-donation-form", clear_on_submit=True):
            category_id = st.selectbox(
                "Fund",
                options=list(category_map.keys()),
                format_func=lambda key: category_map[key],
            )
            amount = st.number_input("Amount (USD)", min_value=0.0, step=5.0, format="%.2f")
            payment_method = st.selectbox("Payment Method", [method for method in PAYMENT_METHODS if method != "card"])
            member_id = st.selectbox(
                "Member",
                options=list(member_options.keys()),
                format_func=lambda key: member_options[key],
            )
            donor_name = st.text_input("Donor Name")
            check_number = st.text_input("Check Number")
            donation_date = st.date_input("Gift Date", value=date.today())
            is_anonymous = st.checkbox("Anonymous")
            note = st.text_input("Note")
            if st.form_submit_button("Record Gift", use_container_width=True):
                try:
                    STORE.add_manual_donation(
                        church_id=church_id,
                        category_id=int(category_id),
                        amount_cents=cents_from_amount(amount),
                        payment_method=payment_method,
                        donor_name=_blank_to_none(donor_name),
                        check_number=_blank_to_none(check_number),
                        is_anonymous=is_anonymous,
                        note=_blank_to_none(note),
                        donation_date=donation_date,
                        member_id=member_id,
                    )
                    st.success("Gift recorded.")
                    st.rerun()
                except ValueError as exc:
                    st.error(str(exc))

    with online_col:
        st.markdown("#### Online Gift (Stripe)")
        st.markdown(
            "<p class='section-note'>Creates a pending gift and a PaymentIntent; the webhook completes it.</p>",
            unsafe_allow_html=True,
        )
        with st.form("online-donation-form", clear_on_submit=True):
            category_id = st.selectbox(
                "Fund",
                options=list(category_map.keys()),
                format_func=lambda key: category_map[key],
                key="online-fund",
            )
            amount = st.number_input("Amount (USD)", min_value=0.0, step=5.0, format="%.2f", key="online-amount")
            donor_name = st.text_input("Name", key="online-name")
            donor_email = st.text_input("Email", key="online-email")
            is_anonymous = st.checkbox("Give anonymously", key="online-anonymous")
            if st.form_submit_button("Start Payment", use_container_width=True):
                try:
                    intent = create_online_donation(
                        STORE,
                        GATEWAY,
                        church_id=church_id,
                        category_id=int(category_id),
                        amount=amount,
                        donor_name=_blank_to_none(donor_name),
                        donor_email=_blank_to_none(donor_email),
                        is_anonymous=is_anonymous,
                    )
                    st.success(f"Payment started ({intent['payment_intent_id']}).")
                except ValueError as exc:
                    st.error(str(exc))

        with st.form("category-create-form", clear_on_submit=True):
            category_name = st.text_input("New Fund Name")
            description = st.text_input("Fund Description")
            if st.form_submit_button("Add Fund"):
                try:
                    STORE.add_category(church_id, category_name, description=_blank_to_none(description))
                    st.rerun()
                except ValueError as exc:
                    st.error(str(exc))

    st.markdown("#### Giving by Fund")
    by_category = _rows_to_dicts(STORE.giving_by_category(church_id))
    category_df = pd.DataFrame(
        [
            {
                "Fund": row["category_name"],
                "Gifts": int(row["gift_count"]),
                "Total": format_currency(int(row["total_cents"])),
            }
            for row in by_category
        ]
    )
    _table_or_info(category_df, "No funds configured.")

    st.markdown("#### Recent Gifts")
    donations = _rows_to_dicts(STORE.list_donations(church_id, limit=100))
    donations_df = pd.DataFrame(
        [
            {
                "Date": row["donation_date"],
                "Donor": "Anonymous" if row["is_anonymous"] else (row.get("donor_name") or "-"),
                "Fund": row["category_name"],
                "Amount": format_currency(int(row["amount_cents"])),
                "Fee": format_currency(int(row["processor_fee_cents"])),
                "Method": row["payment_method"],
                "Status": row["status"],
            }
            for row in donations
        ]
    )
    _table_or_info(donations_df, "No gifts yet.")


def _form_builder() -> FormDefinition:
    if "form_builder" not in st.session_state:
        st.session_state.form_builder = FormDefinition(name="")
    return st.session_state.form_builder


def render_forms_tab(church_id: int) -> None:
    st.markdown("### Forms")
    st.markdown(
        "<p class='section-note'>Build registration forms, then take submissions with returning-visitor recognition.</p>",
        unsafe_allow_html=True,
    )

    builder_col, preview_col = st.columns([1, 1.2], gap="large")
    definition = _form_builder()

    with builder_col:
        st.markdown("#### Form Builder")
        definition.name = st.text_input("Form Name", value=definition.name)
        definition.description = _blank_to_none(st.text_area("Description", value=definition.description or ""))
        definition.form_type = st.selectbox(
            "Form Type",
            FORM_TYPES,
            index=FORM_TYPES.index(definition.form_type),
        )

        template_cols = st.columns(2)
        for index, template_name in enumerate(FIELD_TEMPLATES):
            with template_cols[index % 2]:
                if st.button(f"Add {template_name.title()} Fields", key=f"template-{template_name}"):
                    definition.apply_template(template_name)
                    st.rerun()

        with st.form("field-add-form", clear_on_submit=True):
            field_type = st.selectbox(
                "Field Type",
                FIELD_TYPES,
                format_func=lambda key: FIELD_TYPE_LABELS[key],
            )
            label = st.text_input("Label")
            options = st.text_input("Options (comma separated)")
            required = st.checkbox("Required")
            if st.form_submit_button("Add Field"):
                option_list = [item.strip() for item in options.split(",") if item.strip()] or None
                definition.add_field(field_type, label=label, required=required, options=option_list)
                st.rerun()

        for form_field in list(definition.fields):
            row = st.columns([3, 1, 1, 1, 1])
            with row[0]:
                marker = " *" if form_field.required else ""
                st.write(f"{form_field.label}{marker} ({FIELD_TYPE_LABELS[form_field.type]})")
            with row[1]:
                if st.button("Up", key=f"up-{form_field.id}"):
                    definition.move_field(form_field.id, -1)
                    st.rerun()
            with row[2]:
                if st.button("Down", key=f"down-{form_field.id}"):
                    definition.move_field(form_field.id, 1)
                    st.rerun()
            with row[3]:
                if st.button("Copy", key=f"copy-{form_field.id}"):
                    definition.duplicate_field(form_field.id)
                    st.rerun()
            with row[4]:
                if st.button("Remove", key=f"remove-{form_field.id}"):
                    definition.remove_field(form_field.id)
                    st.rerun()

        with st.expander("Form Settings"):
            settings = definition.settings
            settings.enable_progressive_recognition = st.checkbox(
                "Recognize returning visitors", value=settings.enable_progressive_recognition
            )
            settings.enable_family_registration = st.checkbox(
                "Allow family registration", value=settings.enable_family_registration
            )
            capacity = st.number_input("Capacity (0 = unlimited)", min_value=0, value=settings.max_capacity or 0)
            settings.max_capacity = int(capacity) or None
            settings.enable_waitlist = st.checkbox("Waitlist when full", value=settings.enable_waitlist)
            color_name = st.selectbox("Brand Color", list(BRAND_COLORS.keys()))
            settings.brand_color = BRAND_COLORS[color_name]
            settings.confirmation_message = _blank_to_none(
                st.text_input("Confirmation Message", value=settings.confirmation_message or "")
            )

        if st.button("Save Form", use_container_width=True):
            try:
                save_form(STORE, church_id, definition)
                st.session_state.form_builder = FormDefinition(name="")
                st.success("Form saved.")
                st.rerun()
            except ValueError as exc:
                st.error(str(exc))

    with preview_col:
        forms = _rows_to_dicts(STORE.list_registration_forms(church_id))
        forms_df = pd.DataFrame(
            [
                {
                    "Form": row["name"],
                    "Slug": row["slug"],
                    "Type": row["form_type"],
                    "Active": "Yes" if row["is_active"] else "No",
                    "Submissions": int(row["current_submissions"]),
                    "Capacity": row.get("max_submissions") or "-",
                }
                for row in forms
            ]
        )
        _table_or_info(forms_df, "No forms yet.")
        if not forms:
            return

        form_map = {row["id"]: row for row in forms}
        form_id = st.selectbox(
            "Open Form",
            options=list(form_map.keys()),
            format_func=lambda key: form_map[key]["name"],
        )
        form_row = form_map[form_id]
        toggle_label = "Deactivate Form" if form_row["is_active"] else "Activate Form"
        if st.button(toggle_label, key=f"toggle-form-{form_id}"):
            STORE.set_form_active(int(form_id), not form_row["is_active"])
            st.rerun()

        _render_form_entry(church_id, int(form_id), FormDefinition.from_record(STORE.get_registration_form(int(form_id))))

        submissions = _rows_to_dicts(STORE.list_submissions(church_id, form_id=int(form_id)))
        submissions_df = pd.DataFrame(
            [
                {
                    "Submitted": row["submitted_at"],
                    "Name": f"{json_field(row['form_data'], {}).get('first_name', '')} "
                    f"{json_field(row['form_data'], {}).get('last_name', '')}".strip(),
                    "Status": row["status"],
                    "Type": row["submission_type"],
                    "Family Members": int(row["family_member_count"]),
                    "Profile": row.get("profile_status") or "-",
                }
                for row in submissions
            ]
        )
        _table_or_info(submissions_df, "No submissions for this form yet.")


def _render_form_entry(church_id: int, form_id: int, definition: FormDefinition) -> None:
    st.markdown(f"#### {definition.name}")
    if definition.description:
        st.caption(definition.description)

    recognition_key = f"recognition-{form_id}"
    answers: dict[str, object] = {}
    for form_field in definition.fields:
        key = f"answer-{form_id}-{form_field.id}"
        label = f"{form_field.label}{' *' if form_field.required else ''}"
        if form_field.type == "textarea":
            answers[form_field.id] = st.text_area(label, key=key)
        elif form_field.type in ("select", "radio"):
            answers[form_field.id] = st.selectbox(label, ["", *form_field.options], key=key) or None
        elif form_field.type == "checkbox":
            answers[form_field.id] = st.multiselect(label, form_field.options, key=key)
        elif form_field.type == "date":
            picked = st.date_input(label, value=None, key=key)
            answers[form_field.id] = picked.isoformat() if picked else None
        elif form_field.type == "number":
            answers[form_field.id] = st.text_input(label, key=key) or None
        else:
            answers[form_field.id] = st.text_input(label, key=key)

    recognition = st.session_state.get(recognition_key)
    if definition.settings.enable_progressive_recognition and st.button("Check for Returning Visitor", key=f"recognize-{form_id}"):
        try:
            recognition = RECOGNITION.recognize(
                church_id,
                {
                    "first_name": answers.get("first_name"),
                    "last_name": answers.get("last_name"),
                    "email": answers.get("email") or answers.get("email_address"),
                    "phone": answers.get("phone") or answers.get("phone_number"),
                    "zip_code": answers.get("zip_code"),
                    "city": answers.get("city"),
                    "address": answers.get("address"),
                },
                client_id=ADMIN_CLIENT_ID,
            )
            st.session_state[recognition_key] = recognition
        except RateLimitExceeded as exc:
            st.warning(exc.user_message)
        except ValueError as exc:
            st.error(str(exc))

    confirmed_match = None
    if recognition and recognition.get("match"):
        match = recognition["match"]
        st.info(recognition["display_message"])
        if recognition["status"] == "suggest_match":
            choice = st.radio("Is this you?", ["Yes, that's me", "No, I'm new"], key=f"confirm-{form_id}")
            confirmed_match = match if choice.startswith("Yes") else None
        else:
            confirmed_match = match
    elif recognition and recognition.get("requires_admin_review"):
        st.caption("We'll review your details to connect you with your existing record.")

    if st.button("Submit Registration", key=f"submit-{form_id}", use_container_width=True):
        try:
            if recognition and recognition.get("status") == "suggest_match":
                RECOGNITION.confirm_match(
                    church_id,
                    int(recognition["match"]["profile_id"]),
                    confirmed=confirmed_match is not None,
                    client_id=ADMIN_CLIENT_ID,
                )
            result = submit_registration(
                STORE,
                church_id,
                {**answers, "form_type": definition.form_type},
                form_id=form_id,
                recognized_member_id=confirmed_match["member_id"] if confirmed_match else None,
                recognized_profile_id=confirmed_match["profile_id"] if confirmed_match else None,
                confirm_new_profile=bool(recognition and recognition.get("match") and confirmed_match is None),
                review_queue_id=recognition.get("review_queue_id") if recognition else None,
            )
            st.session_state.pop(recognition_key, None)
            st.success(definition.settings.confirmation_message or result["message"])
            if result["status"] == "waitlisted":
                st.warning("This form is full. You've been added to the waitlist.")
        except RateLimitExceeded as exc:
            st.warning(exc.user_message)
        except ValueError as exc:
            st.error(str(exc))


def render_recognition_tab(church_id: int) -> None:
    st.markdown("### Recognition Review")
    st.markdown(
        "<p class='section-note'>Possible matches between new submissions and existing people.</p>",
        unsafe_allow_html=True,
    )

    analytics = STORE.recognition_analytics(church_id, datetime.now() - timedelta(days=30), datetime.now())
    overview = analytics["overview"]
    metric_cols = st.columns(4)
    with metric_cols[0]:
        st.metric("Recognition Attempts", str(overview["total_recognition_attempts"]))
    with metric_cols[1]:
        st.metric("Success Rate", f"{overview['success_rate']}%")
    with metric_cols[2]:
        st.metric("Average Confidence", str(overview["average_confidence_score"]))
    with metric_cols[3]:
        st.metric("Minutes Saved", str(overview["minutes_saved"]))

    page = st.session_state.get("review_offset", 0)
    queue = STORE.list_reviews(church_id, limit=10, offset=page)
    if not queue["reviews"]:
        st.info("No reviews waiting.")
    for review in _rows_to_dicts(queue["reviews"]):
        with st.expander(f"{review['title']} ({review.get('confidence_score') or 0}%)"):
            compare = st.columns(2)
            with compare[0]:
                st.markdown("**Submitted**")
                st.write(f"{review.get('source_first_name') or ''} {review.get('source_last_name') or ''}")
                st.caption(
                    f"{display_mask_email(review.get('source_email'))} "
                    f"{display_mask_phone(review.get('source_phone'))}"
                )
            with compare[1]:
                st.markdown("**Existing Record**")
                st.write(f"{review.get('target_first_name') or ''} {review.get('target_last_name') or ''}")
                st.caption(
                    f"{display_mask_email(review.get('target_email'))} "
                    f"{display_mask_phone(review.get('target_phone'))}"
                )
            reasons = json_field(review.get("match_reasons"), [])
            if reasons:
                st.caption("Reasons: " + ", ".join(str(reason).replace("_", " ") for reason in reasons))

            notes = st.text_input("Notes", key=f"review-notes-{review['id']}")
            buttons = st.columns(3)
            for column, (action, done) in zip(buttons, REVIEW_ACTIONS):
                with column:
                    if st.button(action.title(), key=f"review-{action}-{review['id']}"):
                        decision = admin_action_limiter.check(ADMIN_CLIENT_ID)
                        if not decision.allowed:
                            st.warning(f"Too many review actions. Try again in {decision.retry_after}s.")
                            continue
                        try:
                            RECOGNITION.handle_review(
                                int(review["id"]),
                                action,
                                reviewer="admin",
                                notes=_blank_to_none(notes),
                            )
                            st.success(f"Review {done}.")
                            st.rerun()
                        except ValueError as exc:
                            st.error(str(exc))

    nav = st.columns(2)
    with nav[0]:
        if page > 0 and st.button("Previous Page"):
            st.session_state.review_offset = max(0, page - 10)
            st.rerun()
    with nav[1]:
        if queue["has_more"] and st.button("Next Page"):
            st.session_state.review_offset = page + 10
            st.rerun()

    st.markdown("#### Recent Recognition Events")
    events = _rows_to_dicts(STORE.list_recognition_events(church_id, limit=25))
    events_df = pd.DataFrame(
        [
            {
                "When": row["created_at"],
                "Event": row["event_type"].replace("_", " "),
                "Confidence": row["confidence"] if row["confidence"] is not None else "-",
            }
            for row in events
        ]
    )
    _table_or_info(events_df, "No recognition activity yet.")


def render_messaging_tab(church_id: int) -> None:
    st.markdown("### Messaging")
    email_provider, sms_provider = providers_for_church(STORE, church_id, SETTINGS)
    dispatcher = MessageDispatcher(STORE, email_provider, sms_provider, base_url=SETTINGS.base_url)
    inbox = SmsInbox(STORE, sms_provider, COMPLIANCE)

    compose_tab, inbox_tab, history_tab, settings_tab = st.tabs(["Compose", "Inbox", "History", "Settings"])

    with compose_tab:
        message_type = st.radio("Channel", ["email", "sms"], horizontal=True, format_func=str.upper)
        templates = _rows_to_dicts(STORE.list_message_templates(church_id, template_type=message_type))
        template_map = {None: "Blank"} | {row["id"]: row["name"] for row in templates}
        template_id = st.selectbox(
            "Template",
            options=list(template_map.keys()),
            format_func=lambda key: template_map[key],
        )
        template = next((row for row in templates if row["id"] == template_id), None)

        recipient_type = st.selectbox(
            "Recipients",
            options=list(RECIPIENT_TYPE_LABELS.keys()),
            format_func=lambda key: RECIPIENT_TYPE_LABELS[key],
        )
        recipient_ids = None
        if recipient_type == "custom_selection":
            members = _rows_to_dicts(STORE.list_members(church_id))
            member_names = {row["id"]: member_display_name(row) for row in members}
            recipient_ids = st.multiselect(
                "Choose People",
                options=list(member_names.keys()),
                format_func=lambda key: member_names[key],
            )

        subject = None
        if message_type == "email":
            subject = st.text_input("Subject", value=(template or {}).get("subject") or "")
        content = st.text_area(
            "Message",
            value=(template or {}).get("content") or "",
            height=180,
            help="Merge fields: {{firstName}}, {{lastName}}, {{fullName}}, {{preferredName}}, {{unsubscribeLink}}",
        )
        fields_used = extract_merge_fields(content)
        if fields_used:
            st.caption("Merge fields: " + ", ".join(fields_used))
        if message_type == "sms" and content:
            audience = STORE.messaging_audience(church_id, recipient_type, recipient_ids)
            st.caption(
                f"{sms_segments(content)} segment(s), estimated "
                f"{format_currency(estimate_sms_cost(content, len(audience)))} for {len(audience)} recipients"
            )

        schedule = st.checkbox("Schedule for later")
        scheduled_for = None
        if schedule:
            schedule_cols = st.columns(2)
            with schedule_cols[0]:
                send_date = st.date_input("Send Date", value=date.today() + timedelta(days=1))
            with schedule_cols[1]:
                send_time = st.time_input("Send Time")
            scheduled_for = datetime.combine(send_date, send_time)

        action_cols = st.columns(2)
        with action_cols[0]:
            if st.button("Send Message", use_container_width=True):
                try:
                    result = dispatcher.send_message(
                        church_id,
                        message_type=message_type,
                        content=content,
                        recipient_type=recipient_type,
                        subject=subject,
                        recipient_ids=recipient_ids,
                        scheduled_for=scheduled_for,
                        sender="admin",
                    )
                    for warning in result["warnings"]:
                        st.warning(warning)
                    if result["status"] == "scheduled":
                        st.success(f"Scheduled for {result['total_recipients']} recipients.")
                    else:
                        st.success(f"Delivered {result['delivered']} of {result['total_recipients']}.")
                except ValueError as exc:
                    st.error(str(exc))
        with action_cols[1]:
            template_name = st.text_input("Save as Template", placeholder="Template name")
            if template_name and st.button("Save Template"):
                try:
                    STORE.add_message_template(church_id, template_name, message_type, content, subject=subject)
                    st.success("Template saved.")
                except ValueError as exc:
                    st.error(str(exc))

    with inbox_tab:
        conversations = _rows_to_dicts(STORE.list_conversations(church_id))
        if not conversations:
            st.info("No text conversations yet.")
        else:
            conversation_map = {row["id"]: row for row in conversations}
            conversation_id = st.selectbox(
                "Conversation",
                options=list(conversation_map.keys()),
                format_func=lambda key: _conversation_label(conversation_map[key]),
            )
            if conversation_map[conversation_id]["unread_count"]:
                inbox.mark_read(int(conversation_id))
            for message in _rows_to_dicts(STORE.list_sms_messages(int(conversation_id))):
                css = "sms-outbound" if message["direction"] == "outbound" else "sms-inbound"
                st.markdown(
                    f"<div class='sms-bubble {css}'>{message['content']}</div>",
                    unsafe_allow_html=True,
                )
            with st.form("sms-reply-form", clear_on_submit=True):
                reply = st.text_area("Reply", height=80)
                if st.form_submit_button("Send Reply"):
                    try:
                        result = inbox.send_reply(int(conversation_id), reply, sender="admin")
                        if result.ok:
                            st.rerun()
                        else:
                            st.error(result.error or "Reply failed.")
                    except ValueError as exc:
                        st.error(str(exc))

    with history_tab:
        messages = _rows_to_dicts(STORE.list_messages(church_id))
        history_df = pd.DataFrame(
            [
                {
                    "Created": row["created_at"],
                    "Channel": row["message_type"].upper(),
                    "Subject": row.get("subject") or row["content"][:40],
                    "Status": row["status"],
                    "Recipients": int(row["total_recipients"]),
                    "Delivered": int(row["delivered_count"]),
                    "Opened": int(row["opened_count"]),
                    "Failed": int(row["failed_count"]),
                    "Cost": format_currency(int(row["cost_cents"])),
                }
                for row in messages
            ]
        )
        _table_or_info(history_df, "No messages sent yet.")

    with settings_tab:
        current = STORE.get_communication_settings(church_id)
        current_dict = dict(current) if current is not None else {}
        with st.form("communication-settings-form"):
            from_name = st.text_input("From Name", value=current_dict.get("from_name") or "")
            from_email = st.text_input("From Email", value=current_dict.get("from_email") or "")
            reply_to = st.text_input("Reply-To Email", value=current_dict.get("reply_to_email") or "")
            sms_number = st.text_input("SMS Phone Number", value=current_dict.get("sms_phone_number") or "")
            two_way = st.checkbox("Enable two-way SMS", value=bool(current_dict.get("enable_two_way_sms")))
            auto_reply = st.text_area("Auto-Reply", value=current_dict.get("sms_auto_reply") or "")
            quiet_cols = st.columns(2)
            with quiet_cols[0]:
                quiet_start = st.text_input("Quiet Hours Start", value=current_dict.get("sms_quiet_hours_start") or "21:00")
            with quiet_cols[1]:
                quiet_end = st.text_input("Quiet Hours End", value=current_dict.get("sms_quiet_hours_end") or "08:00")
            sending_domain = st.text_input("Sending Domain", value=current_dict.get("sending_domain") or "")
            if st.form_submit_button("Save Settings"):
                try:
                    STORE.save_communication_settings(
                        church_id,
                        from_name=_blank_to_none(from_name),
                        from_email=_blank_to_none(from_email),
                        reply_to_email=_blank_to_none(reply_to),
                        sms_phone_number=_blank_to_none(sms_number),
                        enable_two_way_sms=two_way,
                        sms_auto_reply=_blank_to_none(auto_reply),
                        sms_quiet_hours_start=quiet_start.strip(),
                        sms_quiet_hours_end=quiet_end.strip(),
                        sending_domain=_blank_to_none(sending_domain),
                    )
                    st.success("Settings saved.")
                    st.rerun()
                except ValueError as exc:
                    st.error(str(exc))

        if current_dict.get("sending_domain"):
            st.markdown("#### DNS Records")
            try:
                setup = dns_records(current_dict["sending_domain"])
                st.dataframe(pd.DataFrame(setup["records"]), use_container_width=True, hide_index=True)
                for step in setup["instructions"]:
                    st.caption(step)
            except ValueError as exc:
                st.error(str(exc))


def render_compliance_tab(church_id: int) -> None:
    st.markdown("### Compliance")
    report = COMPLIANCE.compliance_report(church_id)
    metric_cols = st.columns(5)
    with metric_cols[0]:
        st.metric("Email Opt-Ins", str(report["email_opt_ins"]))
    with metric_cols[1]:
        st.metric("Email Opt-Outs", str(report["email_opt_outs"]))
    with metric_cols[2]:
        st.metric("SMS Opt-Ins", str(report["sms_opt_ins"]))
    with metric_cols[3]:
        st.metric("Bounce Rate", f"{report['bounce_rate']}%")
    with metric_cols[4]:
        st.metric("Spam Complaints", str(report["spam_complaints"]))

    members = _rows_to_dicts(STORE.list_members(church_id))
    member_names = {row["id"]: member_display_name(row) for row in members}
    if member_names:
        consent_col, unsubscribe_col = st.columns(2, gap="large")
        with consent_col:
            with st.form("consent-form", clear_on_submit=True):
                member_id = st.selectbox(
                    "Person",
                    options=list(member_names.keys()),
                    format_func=lambda key: member_names[key],
                )
                kind = st.selectbox("Consent", ["email", "sms", "both"])
                method = st.selectbox("Method", CONSENT_METHODS)
                if st.form_submit_button("Record Consent"):
                    try:
                        COMPLIANCE.record_consent(int(member_id), kind, method)
                        st.success("Consent recorded.")
                        st.rerun()
                    except ValueError as exc:
                        st.error(str(exc))
        with unsubscribe_col:
            with st.form("unsubscribe-form", clear_on_submit=True):
                member_id = st.selectbox(
                    "Person",
                    options=list(member_names.keys()),
                    format_func=lambda key: member_names[key],
                    key="unsubscribe-member",
                )
                channel = st.selectbox("Channel", ["email", "sms", "all"])
                feedback = st.text_input("Feedback")
                if st.form_submit_button("Unsubscribe"):
                    try:
                        COMPLIANCE.unsubscribe(int(member_id), channel, reason="admin", feedback=_blank_to_none(feedback))
                        st.success("Preferences updated.")
                        st.rerun()
                    except ValueError as exc:
                        st.error(str(exc))

    st.markdown("#### Recent Unsubscribes")
    recent_df = pd.DataFrame(
        [
            {
                "Name": row["member_name"],
                "Email": row["email"] or "-",
                "When": row["unsubscribed_at"],
                "Reason": row["reason"].replace("_", " "),
            }
            for row in report["recent_unsubscribes"]
        ]
    )
    _table_or_info(recent_df, "No unsubscribes recorded.")

    st.markdown("#### Consent Records")
    records = COMPLIANCE.consent_records(church_id)
    _table_or_info(records, "No consent records yet.")
    if not records.empty:
        st.download_button(
            "Download Consent Records (CSV)",
            data=records.to_csv(index=False),
            file_name=f"consent-records-{date.today().isoformat()}.csv",
            mime="text/csv",
            key="consent-records-download",
        )


def main() -> None:
    st.set_page_config(
        page_title="Church CRM",
        page_icon=":church:",
        layout="wide",
    )
    STORE.init_db()
    _inject_styles()
    church_id = _select_church()
    church = STORE.get_church(church_id)
    _hero(church["name"] if church is not None else "Church CRM")

    tabs = st.tabs(
        [
            "Home",
            "People",
            "Families",
            "Giving",
            "Forms",
            "Recognition Review",
            "Messaging",
            "Compliance",
        ]
    )

    with tabs[0]:
        render_dashboard(church_id)
    with tabs[1]:
        render_people_tab(church_id)
    with tabs[2]:
        render_families_tab(church_id)
    with tabs[3]:
        render_giving_tab(church_id)
    with tabs[4]:
        render_forms_tab(church_id)
    with tabs[5]:
        render_recognition_tab(church_id)
    with tabs[6]:
        render_messaging_tab(church_id)
    with tabs[7]:
        render_compliance_tab(church_id)


if __name__ == "__main__":
    main()
