"""Form builder definitions, answer validation, and registration submission."""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any

from .privacy import digits_only
from .store import ChurchStore, json_field, slugify


logger = logging.getLogger(__name__)

FIELD_TYPES = ("text", "email", "phone", "textarea", "select", "checkbox", "radio", "date", "number")
OPTION_FIELD_TYPES = ("select", "radio", "checkbox")
FORM_TYPES = ("general", "registration")

FIELD_TYPE_LABELS = {
    "text": "Text Input",
    "email": "Email Address",
    "phone": "Phone Number",
    "textarea": "Multi-line Text",
    "select": "Dropdown Menu",
    "checkbox": "Checkboxes",
    "radio": "Radio Buttons",
    "date": "Date Picker",
    "number": "Number Input",
}

BRAND_COLORS = {
    "Blue": "#3B82F6",
    "Green": "#10B981",
    "Purple": "#8B5CF6",
    "Red": "#EF4444",
    "Orange": "#F97316",
    "Teal": "#14B8A6",
    "Indigo": "#6366F1",
    "Pink": "#EC4899",
}

MEMBER_CUSTOM_FIELD_TYPES = ("text", "number", "date", "boolean", "select", "textarea")
FAMILY_RELATIONSHIPS = ("Head of Household", "Spouse", "Child", "Other")

FIELD_TEMPLATES: dict[str, list[dict[str, Any]]] = {
    "basic": [
        {"label": "First Name", "type": "text", "required": True},
        {"label": "Last Name", "type": "text", "required": True},
        {"label": "Email Address", "type": "email", "required": True},
        {"label": "Phone Number", "type": "phone", "required": False},
        {"label": "Address", "type": "text", "required": False},
        {"label": "City", "type": "text", "required": False},
        {"label": "State", "type": "text", "required": False},
        {"label": "Zip Code", "type": "text", "required": False},
        {"label": "Date of Birth", "type": "date", "required": False},
        {"label": "Emergency Contact", "type": "text", "required": False},
        {"label": "Comments", "type": "textarea", "required": False},
    ],
    "event": [
        {
            "label": "T-Shirt Size",
            "type": "select",
            "required": False,
            "options": ["XS", "S", "M", "L", "XL", "XXL"],
        },
        {"label": "Dietary Restrictions", "type": "textarea", "required": False},
        {"label": "Special Needs", "type": "textarea", "required": False},
        {
            "label": "How did you hear about this event?",
            "type": "select",
            "required": False,
            "options": ["Website", "Social Media", "Friend", "Email", "Other"],
        },
        {"label": "Number of Guests", "type": "number", "required": False},
    ],
}

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class FormField:
    id: str
    type: str
    label: str
    required: bool = False
    placeholder: str | None = None
    description: str | None = None
    options: list[str] = field(default_factory=list)


@dataclass
class FormSettings:
    requires_auth: bool = False
    allow_anonymous: bool = True
    enable_progressive_recognition: bool = True
    enable_family_registration: bool = False
    max_capacity: int | None = None
    enable_waitlist: bool = False
    requires_payment: bool = False
    payment_amount_cents: int | None = None
    brand_color: str = BRAND_COLORS["Blue"]
    confirmation_message: str | None = None
    redirect_url: str | None = None


@dataclass
class FormDefinition:
    name: str
    description: str | None = None
    form_type: str = "general"
    fields: list[FormField] = field(default_factory=list)
    settings: FormSettings = field(default_factory=FormSettings)

    @property
    def slug(self) -> str:
        return slugify(self.name)

    def _unique_id(self, label: str) -> str:
        base = slugify(label).replace("-", "_") or "field"
        existing = {form_field.id for form_field in self.fields}
        candidate = base
        suffix = 2
        while candidate in existing:
            candidate = f"{base}_{suffix}"
            suffix += 1
        return candidate

    def add_field(
        self,
        field_type: str,
        label: str | None = None,
        required: bool = False,
        options: list[str] | None = None,
        placeholder: str | None = None,
        description: str | None = None,
    ) -> FormField:
        if field_type not in FIELD_TYPES:
            raise ValueError(f"Field type '{field_type}' is not supported.")

        final_label = (label or "").strip() or f"New {FIELD_TYPE_LABELS[field_type]}"
        final_options = list(options or [])
        if field_type in OPTION_FIELD_TYPES and not final_options and options is None:
            final_options = ["Option 1", "Option 2", "Option 3"]

        new_field = FormField(
            id=self._unique_id(final_label),
            type=field_type,
            label=final_label,
            required=required,
            placeholder=placeholder,
            description=description,
            options=final_options,
        )
        self.fields.append(new_field)
        return new_field

    def duplicate_field(self, field_id: str) -> FormField:
        original = self.get_field(field_id)
        copy = FormField(
            id=self._unique_id(f"{original.label} (Copy)"),
            type=original.type,
            label=f"{original.label} (Copy)",
            required=original.required,
            placeholder=original.placeholder,
            description=original.description,
            options=list(original.options),
        )
        self.fields.insert(self.fields.index(original) + 1, copy)
        return copy

    def remove_field(self, field_id: str) -> None:
        self.fields.remove(self.get_field(field_id))

    def move_field(self, field_id: str, offset: int) -> None:
        current = self.get_field(field_id)
        index = self.fields.index(current)
        target = max(0, min(index + offset, len(self.fields) - 1))
        self.fields.insert(target, self.fields.pop(index))

    def get_field(self, field_id: str) -> FormField:
        for form_field in self.fields:
            if form_field.id == field_id:
                return form_field
        raise ValueError(f"Field '{field_id}' was not found.")

    def apply_template(self, template_name: str) -> list[FormField]:
        template = FIELD_TEMPLATES.get(template_name)
        if template is None:
            raise ValueError(f"Template '{template_name}' was not found.")
        return [
            self.add_field(
                field_type=entry["type"],
                label=entry["label"],
                required=entry["required"],
                options=entry.get("options"),
            )
            for entry in template
        ]

    def validate(self) -> None:
        if not self.name.strip():
            raise ValueError("Form name is required.")
        if self.form_type not in FORM_TYPES:
            raise ValueError("Form type must be general or registration.")
        if not self.fields:
            raise ValueError("Add at least one field before saving the form.")

        seen: set[str] = set()
        for form_field in self.fields:
            if form_field.id in seen:
                raise ValueError(f"Field id '{form_field.id}' is used more than once.")
            seen.add(form_field.id)
            if form_field.type not in FIELD_TYPES:
                raise ValueError(f"Field type '{form_field.type}' is not supported.")
            if not form_field.label.strip():
                raise ValueError("Every field needs a label.")
            if form_field.type in ("select", "radio") and not form_field.options:
                raise ValueError(f"Field '{form_field.label}' needs at least one option.")

        if self.settings.requires_payment and not (self.settings.payment_amount_cents or 0) > 0:
            raise ValueError("Paid forms need a payment amount.")
        if self.settings.max_capacity is not None and self.settings.max_capacity <= 0:
            raise ValueError("Capacity must be a positive number.")

    def to_schema(self) -> dict[str, Any]:
        return {"fields": [asdict(form_field) for form_field in self.fields]}

    def settings_dict(self) -> dict[str, Any]:
        return asdict(self.settings)

    @classmethod
    def from_record(cls, row: Any) -> FormDefinition:
        schema = json_field(row["form_schema"], {"fields": []})
        fields = [
            FormField(
                id=str(entry["id"]),
                type=str(entry["type"]),
                label=str(entry["label"]),
                required=bool(entry.get("required")),
                placeholder=entry.get("placeholder"),
                description=entry.get("description"),
                options=list(entry.get("options") or []),
            )
            for entry in schema.get("fields", [])
        ]
        settings = FormSettings(
            requires_auth=bool(row["requires_auth"]),
            allow_anonymous=bool(row["allow_anonymous"]),
            enable_progressive_recognition=bool(row["enable_progressive_recognition"]),
            enable_family_registration=bool(row["enable_family_registration"]),
            max_capacity=row["max_submissions"],
            enable_waitlist=bool(row["enable_waitlist"]),
            requires_payment=bool(row["requires_payment"]),
            payment_amount_cents=row["payment_amount_cents"],
            brand_color=row["brand_color"],
            confirmation_message=row["confirmation_message"],
            redirect_url=row["redirect_url"],
        )
        return cls(
            name=row["name"],
            description=row["description"],
            form_type=row["form_type"],
            fields=fields,
            settings=settings,
        )


def save_form(store: ChurchStore, church_id: int, definition: FormDefinition) -> int:
    definition.validate()
    form_id = store.add_registration_form(
        church_id=church_id,
        name=definition.name,
        form_schema=definition.to_schema(),
        form_type=definition.form_type,
        slug=definition.slug,
        description=definition.description,
        settings=definition.settings_dict(),
    )
    logger.info("Saved form %s (%s) for church %s", form_id, definition.slug, church_id)
    return form_id


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    if isinstance(value, bool):
        return value is False
    return False


def validate_submission(definition: FormDefinition, answers: dict[str, Any]) -> list[str]:
    """Return one message per problem; an empty list means the answers are acceptable."""

    errors: list[str] = []
    for form_field in definition.fields:
        value = answers.get(form_field.id)
        if _is_blank(value):
            if form_field.required:
                errors.append(f"{form_field.label} is required.")
            continue

        if form_field.type == "email":
            if not _EMAIL_PATTERN.match(str(value).strip()):
                errors.append(f"{form_field.label} must be a valid email address.")
        elif form_field.type == "phone":
            if len(digits_only(str(value))) < 10:
                errors.append(f"{form_field.label} must include at least 10 digits.")
        elif form_field.type == "number":
            try:
                float(value)
            except (TypeError, ValueError):
                errors.append(f"{form_field.label} must be a number.")
        elif form_field.type == "date":
            if isinstance(value, date):
                continue
            try:
                date.fromisoformat(str(value))
            except ValueError:
                errors.append(f"{form_field.label} must be a date (YYYY-MM-DD).")
        elif form_field.type in ("select", "radio"):
            if form_field.options and str(value) not in form_field.options:
                errors.append(f"{form_field.label} must be one of the listed options.")
        elif form_field.type == "checkbox" and form_field.options:
            chosen = value if isinstance(value, (list, tuple, set)) else [value]
            invalid = [str(choice) for choice in chosen if str(choice) not in form_field.options]
            if invalid:
                errors.append(f"{form_field.label} has unknown choices: {', '.join(invalid)}.")

    return errors


def success_message(first_name: str, form_type: str, family_count: int) -> str:
    base = f"Thank you, {first_name}! Your registration has been submitted successfully."
    if family_count > 0:
        plural = "s" if family_count > 1 else ""
        return f"{base} We've also registered {family_count} family member{plural} with you."
    if form_type == "registration":
        return f"{base} You'll receive a confirmation email shortly."
    return f"{base} We'll be in touch soon."


def _answer(form_data: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = form_data.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _form_window_error(form: Any, now: datetime) -> str | None:
    stamp = now.strftime("%Y-%m-%d %H:%M:%S")
    if form["opens_at"] and stamp < form["opens_at"]:
        return "This form is not open yet."
    if form["closes_at"] and stamp > form["closes_at"]:
        return "This form is closed."
    return None


def submit_registration(
    store: ChurchStore,
    church_id: int,
    form_data: dict[str, Any],
    form_id: int | None = None,
    recognized_member_id: int | None = None,
    recognized_profile_id: int | None = None,
    confirm_new_profile: bool = False,
    review_queue_id: int | None = None,
    family_members: list[dict[str, Any]] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    if not church_id:
        raise ValueError("Church ID is required.")

    first_name = str(form_data.get("first_name") or "").strip()
    last_name = str(form_data.get("last_name") or "").strip()
    if not first_name or not last_name:
        raise ValueError("First name and last name are required.")

    moment = now or datetime.now()
    form_type = str(form_data.get("form_type") or "general")
    status = "submitted"

    if form_id is not None:
        form = store.get_registration_form(form_id)
        if form is None or form["church_id"] != church_id:
            raise ValueError("Form was not found.")
        if not form["is_active"]:
            raise ValueError("This form is no longer accepting submissions.")
        window_error = _form_window_error(form, moment)
        if window_error:
            raise ValueError(window_error)

        definition = FormDefinition.from_record(form)
        errors = validate_submission(definition, form_data)
        if errors:
            raise ValueError(" ".join(errors))

        capacity = form["max_submissions"]
        if capacity is not None and form["current_submissions"] >= capacity:
            if not form["enable_waitlist"]:
                raise ValueError("This form has reached its capacity.")
            status = "waitlisted"

        form_type = form["form_type"]

    email = _answer(form_data, "email", "email_address")
    phone = _answer(form_data, "phone", "phone_number")
    existing_member_id = None if confirm_new_profile else recognized_member_id

    queued_profile = None
    if existing_member_id is None and review_queue_id is not None:
        queued_profile = store.review_source_profile(church_id, review_queue_id)
        if queued_profile is not None and queued_profile["member_id"] is not None:
            queued_profile = None

    member_id = store.create_or_update_member_from_submission(
        church_id=church_id,
        first_name=first_name,
        last_name=last_name,
        email=email,
        phone=phone,
        date_of_birth=form_data.get("date_of_birth"),
        existing_member_id=existing_member_id,
        profile_id=int(queued_profile["id"]) if queued_profile is not None else None,
    )
    member = store.get_member(member_id)

    profile_id = None if confirm_new_profile else recognized_profile_id
    if queued_profile is not None:
        profile_id = int(queued_profile["id"])
    elif profile_id is None:
        profile = store.profile_for_member(member_id)
        profile_id = int(profile["id"]) if profile is not None else None

    registrations = family_members or []
    submission_id = store.add_form_submission(
        church_id=church_id,
        form_id=form_id,
        form_data={**form_data, "email": email, "phone": phone},
        member_id=member_id,
        person_profile_id=profile_id,
        family_id=member["family_id"] if member is not None else None,
        submission_type="family" if registrations else "individual",
        is_verified=existing_member_id is not None,
        requires_review=queued_profile is not None,
        submitted_at=moment,
        status=status,
    )

    family_registrations: list[dict[str, Any]] = []
    for relative in registrations:
        relative_id = store.create_or_update_member_from_submission(
            church_id=church_id,
            first_name=str(relative.get("first_name") or ""),
            last_name=str(relative.get("last_name") or ""),
            email=relative.get("email"),
            phone=relative.get("phone"),
            date_of_birth=relative.get("date_of_birth"),
            existing_member_id=relative.get("member_id"),
        )
        if member is not None and member["family_id"] is not None and relative.get("member_id") is None:
            store.update_member(relative_id, family_id=member["family_id"])
        store.add_family_member_submission(
            submission_id=submission_id,
            member_id=relative_id,
            first_name=str(relative.get("first_name") or ""),
            last_name=str(relative.get("last_name") or ""),
            email=relative.get("email"),
            phone=relative.get("phone"),
            date_of_birth=relative.get("date_of_birth"),
            relationship=relative.get("relationship"),
        )
        family_registrations.append(
            {
                "member_id": relative_id,
                "name": f"{relative.get('first_name', '')} {relative.get('last_name', '')}".strip(),
            }
        )

    logger.info(
        "Submission %s stored for church %s (member %s, %s family)",
        submission_id,
        church_id,
        member_id,
        len(family_registrations),
    )
    return {
        "success": True,
        "submission_id": submission_id,
        "member_id": member_id,
        "status": status,
        "family_registrations": family_registrations,
        "message": success_message(first_name, form_type, len(family_registrations)),
    }


def family_relationship_label(member: Any, head_marital_status: str | None = None) -> str:
    """Label a household member relative to its head of household."""
    if member["is_head_of_household"]:
        return "Head of Household"
    if member["is_minor"]:
        return "Child"
    if member["marital_status"] == "Married" and head_marital_status == "Married":
        return "Spouse"
    return "Other"
