"""
Monitor ongoing conversations and auto-respond to replies.

One run: take the run lock, check today's budget, pick the conversations
that are due (smart polling), and for each one fetch new replies, decide
whether to answer, write the answer, run it through the safety gate, re-check
the budget, and send. The lock is released however the run ends.

Conversations are processed one at a time with a fixed pause after each send.

Usage:
    python conversation_monitor.py [run] [--account tatamispaces] [--dry-run]
                                   [--max-conversations 20] [--max-responses 10]
                                   [--force-check]
    python conversation_monitor.py stats [--account tatamispaces]
    python conversation_monitor.py disable ENGAGEMENT_ID [--reason "..."]
    python conversation_monitor.py init-db
"""

import sys
import json
import asyncio
import argparse
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

sys.path.insert(0, str(Path(__file__).parent))

from dotenv import load_dotenv
load_dotenv()

from agents.conversation_analyst import should_respond
from agents.responder import generate_response
from config.limits import get_limits, get_platform_limits
from tools import storage, xapi
from tools.budget import BudgetGovernor
from tools.common import response_delay, setup_logging, utc_now
from tools.completion import CompletionService
from tools.engagements import (
    AppendMessages,
    CapReachedError,
    DecrementResponseCount,
    Disable,
    Engagement,
    IncrementResponseCount,
    Message,
    local_message_id,
    synthesize_conversation,
)
from tools.escalation import escalate_failure
from tools.ingestion import fetch_new_replies
from tools.locks import INSTANCE_ID, acquire_lock, release_lock
from tools.safety import SEVERITY_HIGH, SafetyGate
from tools.scheduler import pool_size, select_batch

log = setup_logging("conversation_monitor")

LOCK_NAME = "conversation-monitor"
LOCK_HELD = "lock held"


@dataclass
class MonitorConfig:
    max_conversations_to_check: int = 20
    max_responses_to_send: int = 10
    min_time_between_checks: float = 30   # minutes
    dry_run: bool = False
    use_smart_polling: bool = True

    @classmethod
    def from_limits(cls, limits: dict, **overrides) -> "MonitorConfig":
        config = cls(
            max_conversations_to_check=limits["max_conversations_per_run"],
            max_responses_to_send=limits["max_responses_per_run"],
            min_time_between_checks=limits["min_time_between_checks"],
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(config, key, value)
        return config


@dataclass
class MonitorResult:
    conversations_checked: int = 0
    updates_found: int = 0
    responses_generated: int = 0
    responses_sent: int = 0
    errors: list[str] = field(default_factory=list)
    budget_exhausted: Optional[str] = None


def run_lock_name(account: Optional[str] = None) -> str:
    return f"{LOCK_NAME}-{account}" if account else LOCK_NAME


class ConversationMonitor:
    """Holds one run's collaborators and walks the selected batch."""

    def __init__(
        self,
        config: MonitorConfig,
        limits: dict,
        adapter,
        completion,
        governor: BudgetGovernor,
        safety_gate: Optional[SafetyGate] = None,
        sleep=response_delay,
        clock=utc_now,
    ):
        self.config = config
        self.limits = limits
        self.adapter = adapter
        self.completion = completion
        self.governor = governor
        self.sleep = sleep
        self.clock = clock
        self.result = MonitorResult()
        self._safety_gate = safety_gate
        self._gates: dict[str, SafetyGate] = {}

    def safety_gate_for(self, platform: str) -> SafetyGate:
        if self._safety_gate is not None:
            return self._safety_gate
        if platform not in self._gates:
            platform_limits = get_platform_limits(platform)
            self._gates[platform] = SafetyGate(
                completion=self.completion,
                min_length=platform_limits["min"],
                max_length=platform_limits["hard"],
                quality_threshold=self.limits["quality_score_threshold"],
                quality_fail_open=self.limits["quality_fail_open"],
                toxicity_check_enabled=self.limits["toxicity_check_enabled"],
            )
        return self._gates[platform]

    async def run(self, account: Optional[str] = None) -> MonitorResult:
        self.governor.begin_run()
        if not self.config.dry_run:
            budget = await self.governor.check_daily_limits()
            if not budget.allowed:
                log.warning(f"Skipping run: {budget.reason}")
                self.result.budget_exhausted = budget.reason
                return self.result

        pool = await storage.find_engagements_to_check(
            account=account,
            limit=pool_size(self.config.max_conversations_to_check, self.config.use_smart_polling),
        )
        batch = select_batch(
            pool,
            self.config.max_conversations_to_check,
            self.clock(),
            use_smart_polling=self.config.use_smart_polling,
            min_time_between_checks=self.config.min_time_between_checks,
        )
        log.info(f"{len(batch)} of {len(pool)} candidate conversations due for a check")

        for engagement in batch:
            if self.result.responses_sent >= self.config.max_responses_to_send:
                log.info(f"Reached max responses for this run ({self.config.max_responses_to_send})")
                break
            try:
                keep_going = await self.process(engagement)
            except Exception as e:
                log.error(f"Error processing engagement {engagement.id}: {e}")
                self.result.errors.append(f"Error processing engagement {engagement.id}: {e}")
                continue
            if not keep_going:
                break

        return self.result

    async def process(self, engagement: Engagement) -> bool:
        """Run the pipeline for one conversation. False stops the batch."""
        now = self.clock()
        result = self.result

        if engagement.conversation is None:
            log.info(f"Engagement {engagement.id}: starting conversation tracking")
            if not await storage.record(
                engagement,
                synthesize_conversation(engagement, now, self.limits["max_responses_per_conversation"]),
            ):
                fresh = await storage.get_engagement(engagement.id)
                engagement.conversation = fresh.conversation if fresh else None
            if engagement.conversation is None:
                raise RuntimeError("conversation could not be initialized")

        result.conversations_checked += 1

        ingestion = await fetch_new_replies(engagement, self.adapter, now)
        if not ingestion.success:
            if ingestion.adapter_failed:
                escalation = escalate_failure(
                    engagement, ingestion.error, now, self.limits["max_consecutive_failures"],
                )
                for command in escalation.commands:
                    await storage.record(engagement, command)
                result.errors.append(f"Failed to check conversation {engagement.id}: {ingestion.error}")
            else:
                result.errors.append(ingestion.error)
            return True

        if not ingestion.new_messages:
            return True

        result.updates_found += 1
        conv = engagement.conversation
        latest = ingestion.new_messages[-1]
        log.info(f"Engagement {engagement.id}: {len(ingestion.new_messages)} new, latest from {latest.author_id}")

        if not conv.can_respond:
            log.info(f"Engagement {engagement.id}: auto-response unavailable, recorded replies only")
            return True

        if not self.config.dry_run:
            budget = await self.governor.check_daily_limits()
            if not budget.allowed:
                log.warning(f"Stopping run: {budget.reason}")
                result.budget_exhausted = budget.reason
                return False

        decision = await should_respond(
            conv.messages, latest, engagement, self.completion,
            fail_open=self.limits["decision_fail_open"],
        )
        if not decision.should_respond:
            log.info(f"Engagement {engagement.id}: not responding ({decision.reason})")
            return True

        platform_limits = get_platform_limits(engagement.platform)
        text = await generate_response(
            engagement,
            conv.messages,
            decision.tone,
            platform_limits,
            self.completion,
            attempts=self.limits["generation_attempts"],
            history_window=self.limits["history_window"],
        )
        if not text:
            result.errors.append(f"Failed to generate response for engagement {engagement.id}")
            return True

        safety = self.safety_gate_for(engagement.platform).validate(text, latest.content, engagement)
        if not safety.safe:
            if safety.severity == SEVERITY_HIGH:
                await storage.record(engagement, Disable(reason=f"Safety: {safety.reason}"))
                log.warning(f"Engagement {engagement.id}: auto-response disabled ({safety.reason})")
            return True

        result.responses_generated += 1
        self.governor.record_generated()
        log.info(f"Engagement {engagement.id}: generated ({len(text)} chars): {text[:100]}")

        if self.config.dry_run:
            log.info(f"[DRY RUN] Would reply to {latest.id}: {text}")
            return True

        budget = await self.governor.check_daily_limits()
        if not budget.allowed:
            log.warning(f"Hit daily limit before sending, stopping: {budget.reason}")
            result.budget_exhausted = budget.reason
            return False

        # Reserve the slot before sending, a failed send gives it back
        try:
            await storage.record(engagement, IncrementResponseCount())
        except CapReachedError:
            log.info(f"Engagement {engagement.id}: cap filled by another writer, not sending")
            return True

        try:
            reply = self.adapter.reply_to_post(engagement.account, latest.id, text)
        except Exception:
            await storage.record(engagement, DecrementResponseCount())
            raise
        if not reply.success:
            await storage.record(engagement, DecrementResponseCount())
            result.errors.append(f"Failed to send response for engagement {engagement.id}: {reply.error}")
            return True

        ours = Message(
            id=reply.reply_id or local_message_id(engagement.id, conv.current_auto_response_count),
            author_id=ingestion.own_user_id or "",
            content=text,
            timestamp=self.clock(),
            is_from_us=True,
            url=reply.reply_url,
        )
        await storage.record(engagement, AppendMessages(messages=[ours]))
        self.governor.record_sent()
        result.responses_sent += 1
        log.info(
            f"Engagement {engagement.id}: sent reply {ours.id} "
            f"({conv.current_auto_response_count}/{conv.max_auto_responses})"
        )

        await self.sleep(self.limits["inter_response_delay"], "next conversation")
        return True


async def monitor_and_respond(
    account: Optional[str] = None,
    config: Optional[MonitorConfig] = None,
    *,
    adapter=xapi,
    completion=None,
    governor: Optional[BudgetGovernor] = None,
    safety_gate: Optional[SafetyGate] = None,
    limits: Optional[dict] = None,
    sleep=response_delay,
    clock=utc_now,
    holder: str = INSTANCE_ID,
) -> MonitorResult:
    """One monitoring run. Safe to call from any number of schedulers at once."""
    limits = limits or get_limits()
    config = config or MonitorConfig.from_limits(limits)
    lock_name = run_lock_name(account)

    lock = await acquire_lock(lock_name, ttl_seconds=limits["lock_ttl_seconds"], holder=holder)
    if not lock.acquired:
        log.info(f"Another instance is processing conversations, skipping ({lock.error})")
        return MonitorResult(errors=[LOCK_HELD])

    monitor = None
    try:
        monitor = ConversationMonitor(
            config,
            limits,
            adapter=adapter,
            completion=completion or CompletionService(),
            governor=governor or BudgetGovernor.from_limits(limits, clock=clock),
            safety_gate=safety_gate,
            sleep=sleep,
            clock=clock,
        )
        result = await monitor.run(account)
    except Exception as e:
        log.error(f"Fatal error in conversation monitor: {e}")
        result = monitor.result if monitor else MonitorResult()
        result.errors.append(f"Fatal error in conversation monitor: {e}")
    finally:
        await release_lock(lock_name, holder)

    log.info(
        f"Completed: {result.conversations_checked} checked, {result.updates_found} with updates, "
        f"{result.responses_generated} generated, {result.responses_sent} sent, {len(result.errors)} errors"
    )
    return result


# --- CLI ---

def _add_run_arguments(p: argparse.ArgumentParser, suppress: bool = False) -> None:
    # Subcommand copies are suppressed so they don't clobber top-level values
    def default(value):
        return argparse.SUPPRESS if suppress else value

    p.add_argument("--account", default=default(None), help="Only this account")
    p.add_argument("--dry-run", action="store_true", default=default(False), help="Full pipeline, nothing sent")
    p.add_argument("--max-conversations", type=int, default=default(None), help="Conversations to check")
    p.add_argument("--max-responses", type=int, default=default(None), help="Responses to send")
    p.add_argument("--force-check", action="store_true", default=default(False), help="Ignore check intervals")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Monitor conversations and auto-respond to replies")
    _add_run_arguments(parser)
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Check conversations and respond (default)")
    _add_run_arguments(run, suppress=True)

    stats = sub.add_parser("stats", help="Print conversation statistics")
    stats.add_argument("--account", default=argparse.SUPPRESS)

    disable = sub.add_parser("disable", help="Turn off auto-response for an engagement")
    disable.add_argument("engagement_id", type=int)
    disable.add_argument("--reason", default="Disabled manually")

    sub.add_parser("init-db", help="Create the database schema")
    return parser


def config_from_args(args, limits: dict) -> MonitorConfig:
    config = MonitorConfig.from_limits(
        limits,
        max_conversations_to_check=args.max_conversations,
        max_responses_to_send=args.max_responses,
        dry_run=args.dry_run,
    )
    if args.force_check:
        config.min_time_between_checks = 0
        config.use_smart_polling = False
    return config


async def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    command = args.command or "run"

    await storage.init_db()

    if command == "init-db":
        log.info(f"Database ready at {storage.get_db_path()}")
        return 0

    if command == "stats":
        print(json.dumps(await storage.get_conversation_stats(args.account), indent=2))
        return 0

    if command == "disable":
        if await storage.disable_auto_response(args.engagement_id, args.reason):
            log.info(f"Auto-response disabled for engagement {args.engagement_id}")
            return 0
        log.error(f"No engagement {args.engagement_id}")
        return 1

    limits = get_limits()
    config = config_from_args(args, limits)
    log.info(
        f"Conversation monitor ({'DRY RUN' if config.dry_run else 'LIVE'}) "
        f"account={args.account or 'all'} smart_polling={config.use_smart_polling}"
    )
    result = await monitor_and_respond(args.account, config, limits=limits)

    summary = asdict(result)
    summary["stats"] = await storage.get_conversation_stats(args.account)
    print(json.dumps(summary, indent=2))

    fatal = any(e.startswith("Fatal error") for e in result.errors)
    return 1 if fatal else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
