"""Payment reliability of a member across their birthday groups.

This is deliberately stricter than reminder suppression: a reminder stops as
soon as any payment is attempted, but for reliability only a confirmed
contribution made on or before the birthday counts as on time. Confirmed late
payments and unconfirmed payments after the birthday count as overdue.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Literal

from .contributions import is_liable
from .deadlines import birthday_rule, most_recent_occurrence, period_key
from .directory import ContributionDirectory
from .records import ContributionRecord

Punctuality = Literal["on_time", "late", "overdue", "pending"]


@dataclass(frozen=True)
class ReliabilityReport:
    user_id: str
    as_of: date
    reliability_score: int
    on_time_rate: float
    rating: str
    summary: str
    confirmed_count: int
    on_time_count: int
    late_count: int
    overdue_count: int
    pending_count: int
    groups_considered: int


def classify_punctuality(record: ContributionRecord | None, *, occurrence: date, as_of: date) -> Punctuality:
    if record is not None and record.status == "confirmed":
        # Undated confirmations count as late.
        if record.contribution_date is not None and record.contribution_date <= occurrence:
            return "on_time"
        return "late"
    if occurrence < as_of:
        return "overdue"
    return "pending"


def _rating(*, score: int, confirmed: int, overdue: int) -> tuple[str, str]:
    if confirmed == 0 and overdue == 0:
        return "new", "New member - No contribution history yet"
    if overdue == 0:
        return "excellent", "Excellent - No overdue contributions"
    if score >= 90:
        rating, text = "excellent", "Very reliable - Excellent payment record"
    elif score >= 75:
        rating, text = "good", "Reliable - Good payment record"
    elif score >= 50:
        rating, text = "moderate", "Moderate - Some overdue contributions"
    else:
        rating, text = "poor", "Poor - Multiple overdue contributions"
    return rating, f"{text} ({overdue} overdue)"


def compute_reliability(directory: ContributionDirectory, user_id: str, as_of: date) -> ReliabilityReport:
    user = directory.get_user(user_id)
    counts: dict[Punctuality, int] = {"on_time": 0, "late": 0, "overdue": 0, "pending": 0}
    groups_considered = 0

    for membership, group in directory.list_memberships(user.user_id):
        if group.group_type != "birthday" or membership.status not in {"active", "inactive"}:
            continue
        groups_considered += 1
        for member in directory.list_other_members(group.group_id, user.user_id):
            if member.birthday is None:
                continue
            rule = birthday_rule(member.birthday)
            occurrence = most_recent_occurrence(rule, as_of)
            if not is_liable(membership.joined_at, occurrence):
                continue
            record = directory.find_contribution(
                group.group_id,
                user.user_id,
                obligee_id=member.user_id,
                period_key=period_key(rule, occurrence),
            )
            counts[classify_punctuality(record, occurrence=occurrence, as_of=as_of)] += 1

    confirmed = counts["on_time"] + counts["late"]
    overdue = counts["overdue"] + counts["late"]
    # A late payment counts as confirmed and as overdue.
    expected = confirmed + overdue
    on_time_rate = 100.0
    if expected > 0:
        on_time_rate = counts["on_time"] / expected * 100
    score = round(on_time_rate)
    rating, summary = _rating(score=score, confirmed=confirmed, overdue=overdue)
    return ReliabilityReport(
        user_id=user.user_id,
        as_of=as_of,
        reliability_score=score,
        on_time_rate=round(on_time_rate, 1),
        rating=rating,
        summary=summary,
        confirmed_count=confirmed,
        on_time_count=counts["on_time"],
        late_count=counts["late"],
        overdue_count=overdue,
        pending_count=counts["pending"],
        groups_considered=groups_considered,
    )
