from datetime import datetime, timedelta

import pytest

from core.database import Database
from core.unit_of_work import UnitOfWork
from factories import CLASS_ID
from modules.badges.evaluator import BadgeEvaluator
from modules.badges.models import BadgeAward, BadgeDefinition, CriterionType
from modules.badges.services import BadgeAwardRegistry, BadgeService
from modules.class_settings.model import ProgressionConfig
from modules.classroom.models import Activity, BehaviorEvent, BehaviorType
from modules.classroom.services import ActivityService, AttendanceService, BehaviorService, SubmissionService
from modules.xp.services import CharacterService


@pytest.fixture
def registry(ledger):
    return BadgeAwardRegistry(BadgeEvaluator(), ledger)


@pytest.fixture
async def rising_star():
    return await BadgeService.create_badge(BadgeDefinition(
        badge_id="rising-star", name="Rising Star", criterion=CriterionType.LEVEL_REACHED, required_value=5
    ))


async def test_level_badge_awarded_once_with_bonus(registry, ledger, make_character, rising_star):
    character = await make_character(total_experience=690, level=4)
    await ledger.apply(character, 20, "Activity")

    uow = UnitOfWork()
    awards = await registry.evaluate_and_award("alice", CLASS_ID, uow=uow)

    assert [a.badge_id for a in awards] == ["rising-star"]
    assert awards[0].bonus_experience == 10
    stored = await CharacterService.get("alice", CLASS_ID)
    assert stored.total_experience == 720
    assert [n.data["badge_id"] for n in uow.notifications] == ["rising-star"]
    assert isinstance((await Database.badge_awards().find_one({}))["awarded_at"], datetime)

    assert await registry.evaluate_and_award("alice", CLASS_ID) == []
    assert await Database.badge_awards().count_documents({}) == 1
    assert (await CharacterService.get("alice", CLASS_ID)).total_experience == 720


async def test_not_qualified_means_no_award(registry, make_character, rising_star):
    await make_character(total_experience=300, level=3)
    assert await registry.evaluate_and_award("alice", CLASS_ID) == []


async def test_bonus_is_capped():
    config = ProgressionConfig(badge_bonus_multiplier=2, badge_bonus_cap=100)
    badge = BadgeDefinition(badge_id="xp", name="XP", criterion=CriterionType.TOTAL_EXPERIENCE,
                            required_value=1000)
    assert BadgeAwardRegistry.bonus_for(badge, config) == 100


async def test_badge_bonus_can_unlock_the_next_badge(registry, make_character):
    await BadgeService.create_badge(BadgeDefinition(
        badge_id="first-delivery", name="First", criterion=CriterionType.FIRST_SUBMISSION, required_value=1
    ))
    await BadgeService.create_badge(BadgeDefinition(
        badge_id="xp-100", name="Hundred", criterion=CriterionType.TOTAL_EXPERIENCE, required_value=100
    ))
    await make_character(total_experience=99)
    await Database.submissions().insert_one(
        {"activity_id": "a1", "student_id": "alice", "class_id": CLASS_ID, "submitted_at": datetime.utcnow()}
    )

    awards = await registry.evaluate_and_award("alice", CLASS_ID)
    assert sorted(a.badge_id for a in awards) == ["first-delivery", "xp-100"]


async def test_lost_insert_race_grants_nothing(registry, ledger, make_character, rising_star):
    character = await make_character(total_experience=710, level=5)
    # Another evaluation already paid the keyed bonus and inserted the award row
    await ledger.apply(character, 10, "Badge earned", source="badge", idempotency_key="badge:rising-star")
    await Database.badge_awards().insert_one(
        BadgeAward(student_id="alice", badge_id="rising-star", class_id=CLASS_ID).to_mongo()
    )
    award = await registry._grant(rising_star, "alice", CLASS_ID, ProgressionConfig(), UnitOfWork())

    assert award is None
    assert (await CharacterService.get("alice", CLASS_ID)).total_experience == 720


async def test_unknown_criterion_is_skipped(registry, make_character, rising_star):
    await Database.badges().insert_one(
        {"badge_id": "moon", "name": "Moon", "criterion": "moon_phase", "required_value": 1,
         "active": True, "class_id": None}
    )
    await make_character(total_experience=710, level=5)

    awards = await registry.evaluate_and_award("alice", CLASS_ID)
    assert [a.badge_id for a in awards] == ["rising-star"]


async def test_unknown_criterion_scores_zero(make_character):
    await make_character()
    badge = BadgeDefinition.model_construct(badge_id="moon", criterion="moon_phase", required_value=1)
    assert await BadgeEvaluator().progress_for(badge, "alice", CLASS_ID) == 0


async def test_class_scoped_badges(registry, make_character):
    await BadgeService.create_badge(BadgeDefinition(
        badge_id="local", name="Local", criterion=CriterionType.LEVEL_REACHED, required_value=1,
        class_id="another-class"
    ))
    await make_character()
    assert await registry.evaluate_and_award("alice", CLASS_ID) == []


async def test_deactivated_badges_are_not_evaluated(registry, make_character, rising_star):
    await BadgeService.deactivate("rising-star")
    await make_character(total_experience=710, level=5)
    assert await registry.evaluate_and_award("alice", CLASS_ID) == []


async def test_behavior_streak_breaks_on_negative(make_character):
    await make_character()
    good = BehaviorType(behavior_type_id="help", name="Help", points=10, participation=True)
    bad = BehaviorType(behavior_type_id="late", name="Late", points=-5)
    start = datetime.utcnow() - timedelta(days=10)
    for day, behavior_type in enumerate([good, good, good, bad, good, good]):
        event = BehaviorEvent(student_id="alice", class_id=CLASS_ID, behavior_type_id=behavior_type.behavior_type_id,
                              logged_at=start + timedelta(days=day))
        await BehaviorService.log(event, behavior_type)

    evaluator = BadgeEvaluator()
    streak = BadgeDefinition(badge_id="s", name="S", criterion=CriterionType.POSITIVE_BEHAVIOR_STREAK,
                             required_value=5)
    participation = BadgeDefinition(badge_id="p", name="P", criterion=CriterionType.PARTICIPATION_COUNT,
                                    required_value=5)
    assert await evaluator.progress_for(streak, "alice", CLASS_ID) == 2
    assert await evaluator.progress_for(participation, "alice", CLASS_ID) == 5


async def test_attendance_streak_counts_from_latest(make_character):
    await make_character()
    start = datetime(2026, 9, 1)
    for day, present in enumerate([True, False, True, True, True]):
        await AttendanceService.record("alice", CLASS_ID, start + timedelta(days=day), present)

    badge = BadgeDefinition(badge_id="a", name="A", criterion=CriterionType.PERFECT_ATTENDANCE_STREAK,
                            required_value=30)
    evaluator = BadgeEvaluator()
    progress = await evaluator.progress_for(badge, "alice", CLASS_ID)
    assert progress == 3
    assert evaluator.percentage(badge, progress) == 10.0


async def test_progress_report_lists_unearned_badges(registry, make_character, rising_star):
    await make_character(total_experience=300, level=3)
    report = await registry.progress_report("alice", CLASS_ID)
    assert len(report) == 1
    assert report[0].percentage == 60.0
    assert not report[0].completed


async def test_class_sweep(registry, make_character, rising_star):
    await make_character("alice", total_experience=710, level=5)
    await make_character("bob", total_experience=10)

    results = await registry.evaluate_class(CLASS_ID)
    assert list(results) == ["alice"]


async def test_bonus_paid_before_a_lost_award_insert_is_not_paid_again(registry, make_character, rising_star):
    await make_character(total_experience=710, level=5)
    await registry.evaluate_and_award("alice", CLASS_ID)
    # The bonus landed but the award row did not
    await Database.badge_awards().delete_many({})

    awards = await registry.evaluate_and_award("alice", CLASS_ID)

    assert [a.badge_id for a in awards] == ["rising-star"]
    assert await Database.badge_awards().count_documents({}) == 1
    assert (await CharacterService.get("alice", CLASS_ID)).total_experience == 720


async def _submit_in_order(entries):
    """Create one activity per entry and submit them oldest first. Entries are (due_at, submitted_at)."""
    for index, (due_at, submitted_at) in enumerate(entries):
        activity_id = f"hw{index}"
        await ActivityService.create_activity(Activity(activity_id=activity_id, class_id=CLASS_ID, due_at=due_at))
        await SubmissionService.submit(activity_id, "alice", CLASS_ID, submitted_at=submitted_at)


ON_TIME = BadgeDefinition(badge_id="punctual", name="Punctual", criterion=CriterionType.ON_TIME_SUBMISSION_STREAK,
                          required_value=5)


async def test_on_time_streak_breaks_on_a_late_submission(make_character):
    await make_character()
    start = datetime(2026, 9, 1)
    due = start + timedelta(days=1)
    await _submit_in_order([
        (due, start),
        (due, start + timedelta(hours=2)),
        (due, start + timedelta(days=2)),
        (due + timedelta(days=5), start + timedelta(days=3)),
        (due + timedelta(days=5), start + timedelta(days=4)),
    ])

    assert await BadgeEvaluator().progress_for(ON_TIME, "alice", CLASS_ID) == 2


async def test_on_time_streak_breaks_on_an_activity_without_due_date(make_character):
    await make_character()
    start = datetime(2026, 9, 1)
    await _submit_in_order([
        (start + timedelta(days=1), start),
        (None, start + timedelta(hours=1)),
    ])

    assert await BadgeEvaluator().progress_for(ON_TIME, "alice", CLASS_ID) == 0


async def test_submission_on_the_due_date_is_on_time(make_character):
    await make_character()
    due = datetime(2026, 9, 1, 23, 59)
    await _submit_in_order([(due, due)])

    assert await BadgeEvaluator().progress_for(ON_TIME, "alice", CLASS_ID) == 1


async def test_activities_completed_counts_passing_grades(make_character):
    await make_character()
    for index, score in enumerate([15, 10.9, 11, 20]):
        await SubmissionService.record_grade(f"hw{index}", "alice", CLASS_ID, score)
    # Submitted but never graded
    await SubmissionService.submit("hw9", "alice", CLASS_ID)

    badge = BadgeDefinition(badge_id="busy", name="Busy", criterion=CriterionType.ACTIVITIES_COMPLETED,
                            required_value=3)
    evaluator = BadgeEvaluator()
    assert await evaluator.progress_for(badge, "alice", CLASS_ID) == 3
    assert await evaluator.progress_for(badge, "alice", CLASS_ID, ProgressionConfig(passing_grade=15)) == 2
