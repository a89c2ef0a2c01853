"""Match form submitters to known person profiles and route the outcome."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

from .errors import RateLimitExceeded, categorize_error, fallback_result
from .privacy import (
    email_variations,
    mask_email,
    mask_phone,
    normalize_phone,
    sanitize_recognition_input,
)
from .rate_limit import FixedWindowLimiter
from .store import ChurchStore


logger = logging.getLogger(__name__)

CONFIDENCE_FACTORS = {
    "email_exact": 50,
    "email_domain": 30,
    "phone_exact": 45,
    "phone_normalized": 35,
    "first_name_exact": 20,
    "last_name_exact": 20,
    "first_name_similar": 10,
    "last_name_similar": 10,
    "same_address": 25,
    "same_zip_code": 15,
    "same_city": 10,
    "same_family": 30,
    "previous_submission": 20,
    "recent_activity": 10,
    "consistent_details": 15,
    "conflicting_info": -30,
    "different_church": -100,
    "age_inconsistency": -20,
}

AUTO_LINK_THRESHOLD = 98
SUGGEST_MATCH_THRESHOLD = 85
ADMIN_REVIEW_THRESHOLD = 70

NAME_SIMILARITY_CUTOFF = 0.8


def levenshtein_distance(left: str, right: str) -> int:
    if len(left) < len(right):
        left, right = right, left
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i]
        for j, right_char in enumerate(right, start=1):
            substitution = previous[j - 1] + (left_char != right_char)
            current.append(min(previous[j] + 1, current[j - 1] + 1, substitution))
        previous = current
    return previous[-1]


def string_similarity(left: str | None, right: str | None) -> float:
    """Levenshtein similarity in [0, 1], ignoring case and outer whitespace."""
    if not left or not right:
        return 0.0
    a = left.strip().lower()
    b = right.strip().lower()
    longest = max(len(a), len(b))
    if longest == 0:
        return 0.0
    return (longest - levenshtein_distance(a, b)) / longest


def recognition_action(confidence: int) -> str:
    if confidence >= AUTO_LINK_THRESHOLD:
        return "auto_fill"
    if confidence >= SUGGEST_MATCH_THRESHOLD:
        return "confirm_identity"
    if confidence >= ADMIN_REVIEW_THRESHOLD:
        return "admin_review"
    return "create_new"


def _same_text(left: str | None, right: str | None) -> bool:
    if not left or not right:
        return False
    return left.strip().lower() == right.strip().lower()


class ProgressiveRecognition:
    """Score candidates, then auto-link, suggest, or hand off to an admin."""

    def __init__(self, store: ChurchStore, limiter: FixedWindowLimiter | None = None) -> None:
        self.store = store
        self.limiter = limiter

    def _enforce_limit(self, client_id: str | None) -> None:
        if self.limiter is None or client_id is None:
            return
        decision = self.limiter.check(client_id)
        if not decision.allowed:
            logger.warning("Recognition rate limit hit for %s", client_id)
            raise RateLimitExceeded(decision.retry_after or 1)

    def score_candidate(
        self,
        church_id: int,
        inputs: dict[str, str | None],
        candidate: sqlite3.Row | dict[str, Any],
    ) -> tuple[int, list[str]]:
        score = 0
        reasons: list[str] = []

        input_email = inputs.get("email")
        profile_email = candidate["email"]
        if input_email and profile_email:
            if input_email == profile_email.lower():
                score += CONFIDENCE_FACTORS["email_exact"]
                reasons.append("exact_email_match")
            elif profile_email.lower() in email_variations(input_email):
                score += CONFIDENCE_FACTORS["email_domain"]
                reasons.append("email_variation_match")

        input_phone = normalize_phone(inputs.get("phone"))
        if input_phone and input_phone == normalize_phone(candidate["phone"]):
            score += CONFIDENCE_FACTORS["phone_exact"]
            reasons.append("exact_phone_match")

        first_similarity = string_similarity(inputs.get("first_name"), candidate["first_name"])
        last_similarity = string_similarity(inputs.get("last_name"), candidate["last_name"])
        if first_similarity == 1:
            score += CONFIDENCE_FACTORS["first_name_exact"]
            reasons.append("exact_first_name")
        elif first_similarity > NAME_SIMILARITY_CUTOFF:
            score += CONFIDENCE_FACTORS["first_name_similar"]
            reasons.append("similar_first_name")
        if last_similarity == 1:
            score += CONFIDENCE_FACTORS["last_name_exact"]
            reasons.append("exact_last_name")
        elif last_similarity > NAME_SIMILARITY_CUTOFF:
            score += CONFIDENCE_FACTORS["last_name_similar"]
            reasons.append("similar_last_name")

        if _same_text(inputs.get("address"), candidate["address"]):
            score += CONFIDENCE_FACTORS["same_address"]
            reasons.append("same_address")
        if inputs.get("zip_code") and inputs.get("zip_code") == candidate["zip_code"]:
            score += CONFIDENCE_FACTORS["same_zip_code"]
            reasons.append("same_zip_code")
        if _same_text(inputs.get("city"), candidate["city"]):
            score += CONFIDENCE_FACTORS["same_city"]
            reasons.append("same_city")

        if candidate["family_id"] is not None:
            score += CONFIDENCE_FACTORS["same_family"]
            reasons.append("family_member")

        if self.store.has_previous_submission(church_id, int(candidate["id"])):
            score += CONFIDENCE_FACTORS["previous_submission"]
            reasons.append("previous_submission")

        if (
            input_email
            and profile_email
            and input_email != profile_email.lower()
            and first_similarity > NAME_SIMILARITY_CUTOFF
            and last_similarity > NAME_SIMILARITY_CUTOFF
        ):
            score += CONFIDENCE_FACTORS["conflicting_info"]
            reasons.append("conflicting_email")

        return max(0, min(score, 100)), reasons

    def find_family_members(self, church_id: int, profile_id: int) -> list[dict[str, Any]]:
        rows = self.store.profile_family_members(church_id, profile_id, limit=10)
        return [
            {
                "profile_id": row["id"],
                "member_id": row["member_id"],
                "first_name": row["first_name"] or "",
                "last_name": row["last_name"] or "",
                "relationship": "spouse" if row["member_marital_status"] == "Married" else "family_member",
                "date_of_birth": row["date_of_birth"],
                "email": row["email"],
                "phone": row["phone"],
            }
            for row in rows
        ]

    def find_matches(
        self,
        church_id: int,
        inputs: dict[str, str | None],
        max_matches: int = 1,
        include_family: bool = True,
    ) -> list[dict[str, Any]]:
        candidates = self.store.recognition_candidates(
            church_id=church_id,
            email=inputs.get("email"),
            phone=inputs.get("phone"),
            first_name=inputs.get("first_name"),
            last_name=inputs.get("last_name"),
            limit=max_matches * 3,
        )

        matches: list[dict[str, Any]] = []
        for candidate in candidates:
            confidence, reasons = self.score_candidate(church_id, inputs, candidate)
            if confidence <= 0:
                continue
            matches.append(
                {
                    "profile_id": candidate["id"],
                    "member_id": candidate["member_id"],
                    "family_id": candidate["family_id"],
                    "confidence": confidence,
                    "match_reasons": reasons,
                    "profile": {
                        "first_name": candidate["first_name"],
                        "last_name": candidate["last_name"],
                        "email": candidate["email"],
                        "phone": candidate["phone"],
                        "date_of_birth": candidate["date_of_birth"],
                        "address": candidate["address"],
                        "city": candidate["city"],
                        "state": candidate["state"],
                        "zip_code": candidate["zip_code"],
                    },
                    "family_members": [],
                }
            )

        matches.sort(key=lambda match: (match["confidence"], -int(match["profile_id"])), reverse=True)
        matches = matches[:max_matches]

        if include_family and matches and matches[0]["confidence"] >= SUGGEST_MATCH_THRESHOLD:
            matches[0]["family_members"] = self.find_family_members(church_id, int(matches[0]["profile_id"]))
        return matches

    def recognize(
        self,
        church_id: int,
        raw_input: dict[str, Any],
        max_matches: int = 1,
        include_family: bool = True,
        respect_privacy: bool = True,
        client_id: str | None = None,
    ) -> dict[str, Any]:
        self._enforce_limit(client_id)

        inputs = sanitize_recognition_input(raw_input)
        if not (inputs["email"] or inputs["phone"] or inputs["first_name"]):
            raise ValueError("Provide an email address, phone number, or first name.")
        bounded_matches = max(1, min(int(max_matches), 5))

        try:
            matches = self.find_matches(church_id, inputs, bounded_matches, include_family)
            if not matches:
                result: dict[str, Any] = {"status": "no_match", "confidence": 0}
            else:
                result = self._route_match(church_id, matches[0], inputs, respect_privacy)
                result["alternatives"] = [
                    {"profile_id": match["profile_id"], "confidence": match["confidence"]}
                    for match in matches[1:]
                ]
        except (sqlite3.Error, RuntimeError) as exc:
            error = categorize_error(exc)
            logger.error("Recognition failed for church %s: %s", church_id, error.code, exc_info=True)
            return fallback_result(error)

        logger.info(
            "Recognition for church %s finished with %s (%s)",
            church_id,
            result["status"],
            result.get("confidence", 0),
        )
        return result

    def _route_match(
        self,
        church_id: int,
        match: dict[str, Any],
        inputs: dict[str, str | None],
        respect_privacy: bool,
    ) -> dict[str, Any]:
        confidence = int(match["confidence"])
        profile = match["profile"]

        if confidence >= SUGGEST_MATCH_THRESHOLD:
            masked = {
                "first_name": profile["first_name"],
                "last_name": profile["last_name"],
                "email": mask_email(profile["email"]) if profile["email"] else None,
                "phone": mask_phone(profile["phone"]) if profile["phone"] else None,
                "address": profile["address"],
            }
            shown_match = dict(match)
            if respect_privacy:
                shown_match["profile"] = masked
                shown_match["family_members"] = [
                    {
                        **member,
                        "email": mask_email(member["email"]) if member["email"] else None,
                        "phone": mask_phone(member["phone"]) if member["phone"] else None,
                    }
                    for member in match["family_members"]
                ]

            if confidence >= AUTO_LINK_THRESHOLD:
                message = f"Welcome back, {profile['first_name'] or 'friend'}! We've pre-filled your information."
                status = "auto_linked"
            else:
                if profile["first_name"] and profile["last_name"]:
                    display_name = f"{profile['first_name']} {profile['last_name']}"
                else:
                    display_name = "someone in our system"
                message = (
                    f"It looks like you might have registered with us before as "
                    f"{display_name} ({masked['email'] or ''}). Is this you?"
                )
                status = "suggest_match"

            return {
                "status": status,
                "confidence": confidence,
                "action": recognition_action(confidence),
                "match": shown_match,
                "display_message": message,
                "masked_data": masked if respect_privacy else dict(profile),
                "requires_admin_review": False,
            }

        if confidence >= ADMIN_REVIEW_THRESHOLD:
            review_id = self.queue_for_admin_review(church_id, match, inputs)
            return {
                "status": "no_match",
                "confidence": 0,
                "action": "admin_review",
                "requires_admin_review": True,
                "review_queue_id": review_id,
            }

        return {"status": "no_match", "confidence": 0, "action": "create_new"}

    def queue_for_admin_review(
        self,
        church_id: int,
        match: dict[str, Any],
        inputs: dict[str, str | None],
    ) -> int:
        # Held out of candidate search until an admin decides the review.
        source_profile_id = self.store.add_person_profile(
            church_id=church_id,
            first_name=inputs.get("first_name"),
            last_name=inputs.get("last_name"),
            email=inputs.get("email"),
            phone=inputs.get("phone"),
            address=inputs.get("address"),
            city=inputs.get("city"),
            state=inputs.get("state"),
            zip_code=inputs.get("zip_code"),
            date_of_birth=inputs.get("date_of_birth"),
            profile_status="pending_review",
            confidence_score=int(match["confidence"]),
        )
        first_name = match["profile"]["first_name"] or ""
        last_name = match["profile"]["last_name"] or ""
        review_id = self.store.queue_profile_review(
            church_id=church_id,
            source_profile_id=source_profile_id,
            target_profile_id=int(match["profile_id"]),
            target_member_id=match["member_id"],
            confidence=int(match["confidence"]),
            match_reasons=list(match["match_reasons"]),
            title=f"Potential duplicate: {first_name} {last_name}".rstrip(),
            description=f"Found potential match with {match['confidence']}% confidence",
            review_data={"match": match, "input": inputs, "reasons": match["match_reasons"]},
        )
        logger.info("Queued review %s for church %s at %s%%", review_id, church_id, match["confidence"])
        return review_id

    def confirm_match(
        self,
        church_id: int,
        profile_id: int,
        confirmed: bool,
        submission_id: int | None = None,
        feedback: str | None = None,
        client_id: str | None = None,
    ) -> dict[str, Any]:
        self._enforce_limit(client_id)

        profile = self.store.get_profile(profile_id)
        if profile is None or profile["church_id"] != church_id:
            raise ValueError("Profile not found or access denied.")

        if confirmed:
            self.store.verify_profile(profile_id, confidence_delta=10)
            if submission_id is not None:
                self.store.link_submission_to_profile(submission_id, profile_id)
            self.store.log_recognition_event(
                church_id,
                "match_confirmed",
                profile_id=profile_id,
                submission_id=submission_id,
                confidence=min(100, int(profile["confidence_score"]) + 10),
                details={"feedback": feedback} if feedback else None,
            )
            logger.info("Profile %s confirmed by submitter", profile_id)
            return {
                "success": True,
                "message": "Match confirmed successfully",
                "profile": {
                    "id": profile["id"],
                    "first_name": profile["first_name"],
                    "last_name": profile["last_name"],
                    "email": profile["email"],
                    "phone": profile["phone"],
                    "status": "verified",
                },
            }

        updated = self.store.adjust_profile_confidence(profile_id, -20)
        self.store.log_recognition_event(
            church_id,
            "match_rejected",
            profile_id=profile_id,
            submission_id=submission_id,
            confidence=updated,
            details={"feedback": feedback} if feedback else None,
        )
        logger.info("Profile %s rejected by submitter", profile_id)
        return {
            "success": True,
            "message": "Match rejected. You can continue as a new visitor.",
            "create_new_profile": True,
        }

    def handle_review(
        self,
        review_id: int,
        action: str,
        reviewer: str | None = None,
        notes: str | None = None,
        keep_data: str = "merge",
        client_id: str | None = None,
    ) -> dict[str, Any]:
        self._enforce_limit(client_id)

        if action == "approve":
            result = self.store.approve_review(review_id, reviewer=reviewer, notes=notes)
        elif action == "reject":
            result = self.store.reject_review(review_id, reviewer=reviewer, notes=notes)
        elif action == "merge":
            result = self.store.merge_review(review_id, keep_data=keep_data, reviewer=reviewer, notes=notes)
        else:
            raise ValueError("Review action must be approve, reject, or merge.")

        logger.info("Review %s processed with %s by %s", review_id, action, reviewer or "unknown")
        return result
