"""
Scheduled Rollovers

Two batch jobs, triggered by an external scheduler:
- Daily reset: generate each user's daily challenges and weekly challenge
- Weekly group reset (Monday): archive last week's ranking, pay rank
  bonuses, pay completed group challenge rewards, zero weekly XP and
  create this week's group challenge

Both are safe to re-run for the same day. Each user or group is processed
in its own store transaction: a failure rolls that one back completely, is
logged and collected in the report, and the batch keeps going.
"""

import logging
from datetime import date
from typing import List, Optional

from src.config import WEEKLY_RANK_BONUSES
from src.gamification.challenges import (
    generate_daily_challenges,
    generate_group_challenge,
    generate_weekly_challenge,
)
from src.gamification.store import GamificationStore
from src.gamification.xp_system import grant_xp
from src.models.gamification import Group, GroupWeeklyHistory, RolloverError, RolloverReport
from src.utils.datetime_helpers import get_last_week_range, get_week_start

logger = logging.getLogger(__name__)


async def run_daily_reset(
    store: GamificationStore,
    today: date,
    user_ids: Optional[List[str]] = None,
) -> RolloverReport:
    """
    Generate the day's daily challenges and the week's weekly challenge for every user

    Args:
        store: Gamification store
        today: Calendar date being opened
        user_ids: Users to process (defaults to every profile in the store)

    Returns:
        RolloverReport (created counts new instances)
    """
    report = RolloverReport(run_date=today)
    if user_ids is None:
        user_ids = await store.list_user_ids()
    week_start = get_week_start(today)

    logger.info(f"Running daily reset for {len(user_ids)} users on {today}")

    for user_id in user_ids:
        try:
            async with store.transaction():
                before = len(await store.list_daily_challenges(user_id, today))
                daily = await generate_daily_challenges(store, user_id, today)
                created = len(daily) - before

                had_weekly = await store.get_weekly_challenge(user_id, week_start) is not None
                weekly = await generate_weekly_challenge(store, user_id, week_start)
                if weekly is not None and not had_weekly:
                    created += 1

            report.created += created
            report.processed += 1
        except Exception as e:
            logger.error(f"Daily reset failed for user {user_id}: {e}", exc_info=True)
            report.errors.append(RolloverError(entity_id=user_id, operation="daily_reset", error=str(e)))

    logger.info(
        f"Daily reset complete: {report.processed} users, "
        f"{report.created} challenges created, {len(report.errors)} errors"
    )
    return report


async def _archive_group_week(
    store: GamificationStore,
    group: Group,
    last_week_start: date,
    last_week_end: date,
) -> int:
    """
    Write last week's history row and pay rank bonuses if the row is new

    Returns:
        Number of rank bonuses paid
    """
    members = await store.list_group_members(group.id)
    participants = sorted(
        (m for m in members if m.weekly_xp > 0),
        key=lambda m: m.weekly_xp,
        reverse=True,
    )
    if not participants:
        logger.debug(f"Group {group.id} had no activity the week of {last_week_start}")
        return 0

    winners = participants[:len(WEEKLY_RANK_BONUSES)]
    history = GroupWeeklyHistory(
        group_id=group.id,
        week_start=last_week_start,
        week_end=last_week_end,
        total_xp=sum(m.weekly_xp for m in members),
        member_count=len(participants),
        top_user_ids=[m.user_id for m in winners],
        rank_bonuses=WEEKLY_RANK_BONUSES[:len(winners)],
    )
    if not await store.insert_group_weekly_history(history):
        logger.debug(f"Group {group.id} history for {last_week_start} already archived")
        return 0

    paid = 0
    for place, (member, bonus) in enumerate(zip(winners, WEEKLY_RANK_BONUSES), start=1):
        await grant_xp(
            store, member.user_id, bonus, "weekly_rank",
            source_id=group.id,
            reason=f"Place {place} in {group.name} ({member.weekly_xp} XP)",
        )
        paid += 1
    logger.info(f"Archived week {last_week_start} for group {group.id}, paid {paid} rank bonuses")
    return paid


async def _reward_group_challenge(store: GamificationStore, group: Group, week_start: date) -> int:
    """
    Pay every member the reward for a completed group challenge, once

    Returns:
        Number of members rewarded
    """
    challenge = await store.get_group_challenge(group.id, week_start)
    if challenge is None or not challenge.completed or challenge.rewards_distributed:
        return 0

    template = next(
        (t for t in await store.list_group_challenge_templates() if t.id == challenge.template_id),
        None,
    )
    if template is None:
        return 0

    # Flag first so a retried run never pays twice
    challenge.rewards_distributed = True
    await store.save_group_challenge(challenge)

    members = await store.list_group_members(group.id)
    for member in members:
        await grant_xp(
            store, member.user_id, template.xp_reward_per_member, "group_challenge",
            source_id=challenge.id,
            reason=f"Group challenge completed: {template.name}",
        )
    logger.info(f"Group {group.id} challenge '{template.name}' rewarded {len(members)} members")
    return len(members)


async def run_weekly_group_reset(store: GamificationStore, today: date) -> RolloverReport:
    """
    Close last week for every group and open this week

    For each group:
    1. Archive last week's top 3 / total XP / participants if not archived yet
    2. Pay 25/15/10 rank bonuses, only when the archive row was just created
    3. Pay rewards for last week's completed group challenge, once
    4. Zero weekly XP
    5. Create this week's group challenge if missing

    Returns:
        RolloverReport (bonuses_paid counts rank bonuses and challenge rewards)
    """
    report = RolloverReport(run_date=today)
    last_week_start, last_week_end = get_last_week_range(today)
    this_week_start = get_week_start(today)

    groups = await store.list_groups()
    logger.info(f"Running weekly group reset for {len(groups)} groups (closing week of {last_week_start})")

    for group in groups:
        try:
            async with store.transaction():
                paid = await _archive_group_week(store, group, last_week_start, last_week_end)
                paid += await _reward_group_challenge(store, group, last_week_start)

                await store.reset_group_weekly_xp(group.id)

                had_challenge = await store.get_group_challenge(group.id, this_week_start) is not None
                member_count = len(await store.list_group_members(group.id))
                challenge = await generate_group_challenge(store, group.id, this_week_start, member_count)
                created = 1 if challenge is not None and not had_challenge else 0

            report.bonuses_paid += paid
            report.created += created
            report.processed += 1
        except Exception as e:
            logger.error(f"Weekly reset failed for group {group.id}: {e}", exc_info=True)
            report.errors.append(RolloverError(entity_id=group.id, operation="weekly_group_reset", error=str(e)))

    logger.info(
        f"Weekly group reset complete: {report.processed} groups, "
        f"{report.bonuses_paid} bonuses paid, {len(report.errors)} errors"
    )
    return report
