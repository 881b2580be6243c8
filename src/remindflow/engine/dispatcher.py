"""Notification dispatcher: one channel send with classified retry/backoff."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping

from remindflow.core.config import DispatchConfig
from remindflow.core.exceptions import ChannelError, PermanentChannelError
from remindflow.core.protocols import IChannelSender
from remindflow.engine.audit import AuditTrail
from remindflow.engine.retry import ErrorClass, RetryPolicy, classify_provider_error
from remindflow.models.audit import AuditAction, AuditStatus
from remindflow.models.notification import (
    AttemptOutcome,
    Channel,
    Delivery,
    NotificationAttempt,
    RenderedMessage,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class BatchLimit:
    size: int
    delay: float


DEFAULT_BATCH_LIMITS: dict[Channel, BatchLimit] = {
    Channel.EMAIL: BatchLimit(size=10, delay=0.1),
    Channel.SMS: BatchLimit(size=5, delay=1.0),
    Channel.WHATSAPP: BatchLimit(size=3, delay=2.0),
    Channel.COMMENT: BatchLimit(size=5, delay=0.5),
}


class NotificationDispatcher:
    """Sends rendered messages through registered channel senders.

    Every attempt (success, retried transient failure, terminal failure)
    produces exactly one audit entry.
    """

    def __init__(
        self,
        senders: Mapping[Channel, IChannelSender],
        audit: AuditTrail,
        retry_policy: RetryPolicy | None = None,
        *,
        call_timeout: float = 30.0,
        enabled: set[Channel] | None = None,
        batch_limits: Mapping[Channel, BatchLimit] | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._senders = dict(senders)
        self._audit = audit
        self._retry = retry_policy or RetryPolicy()
        self._call_timeout = call_timeout
        self._enabled = set(enabled) if enabled is not None else set(Channel)
        self._limits = dict(DEFAULT_BATCH_LIMITS)
        if batch_limits:
            self._limits.update(batch_limits)
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: DispatchConfig,
        senders: Mapping[Channel, IChannelSender],
        audit: AuditTrail,
        *,
        call_timeout: float = 30.0,
        sleep: Sleep = asyncio.sleep,
    ) -> NotificationDispatcher:
        flags = {
            Channel.COMMENT: config.comment_enabled,
            Channel.EMAIL: config.email_enabled,
            Channel.SMS: config.sms_enabled,
            Channel.WHATSAPP: config.whatsapp_enabled,
        }
        limits = {
            Channel.EMAIL: BatchLimit(config.email_batch_size, config.email_batch_delay_seconds),
            Channel.SMS: BatchLimit(config.sms_batch_size, config.sms_batch_delay_seconds),
            Channel.WHATSAPP: BatchLimit(config.whatsapp_batch_size, config.whatsapp_batch_delay_seconds),
            Channel.COMMENT: BatchLimit(config.comment_batch_size, config.comment_batch_delay_seconds),
        }
        return cls(
            senders,
            audit,
            RetryPolicy(retry_attempts=config.retry_attempts, backoff_base=config.backoff_base_seconds),
            call_timeout=call_timeout,
            enabled={c for c, on in flags.items() if on},
            batch_limits=limits,
            sleep=sleep,
        )

    def is_enabled(self, channel: Channel) -> bool:
        return channel in self._enabled and channel in self._senders

    async def dispatch(
        self,
        channel: Channel,
        recipient: str,
        message: RenderedMessage,
        *,
        item_id: str = "",
        stage: int | None = None,
    ) -> NotificationAttempt:
        """Send one message, retrying transient failures per the retry policy.

        Returns:
            The delivered NotificationAttempt.

        Raises:
            PermanentChannelError: non-retryable failure, or retries exhausted.
        """
        attempt = NotificationAttempt(channel=channel, recipient=recipient, message=message)
        sender = self._senders.get(channel)
        if sender is None or channel not in self._enabled:
            attempt.attempts = 1
            await self._audit.arecord(
                AuditAction.DISPATCH_ATTEMPT, item_id=item_id, status=AuditStatus.FAILURE,
                stage=stage, channel=channel, recipient=recipient, attempt=1,
                error_class=ErrorClass.UNSUPPORTED_DESTINATION,
                message=f"{channel} channel is disabled or has no sender",
            )
            raise PermanentChannelError(
                f"{channel} channel is disabled or has no sender",
                channel=channel, error_class=ErrorClass.UNSUPPORTED_DESTINATION, attempts=1,
            )

        retries = 0
        while True:
            attempt.attempts += 1
            try:
                receipt = await asyncio.wait_for(
                    sender.send(recipient, message.subject, message.body),
                    timeout=self._call_timeout,
                )
                if not receipt.success:
                    raise ChannelError("provider reported an unsuccessful send", channel=channel)
            except Exception as exc:
                error_class = classify_provider_error(exc)
                if self._retry.should_retry(error_class, retries):
                    delay = self._retry.backoff(error_class, retries)
                    await self._audit.arecord(
                        AuditAction.DISPATCH_ATTEMPT, item_id=item_id, status=AuditStatus.RETRY,
                        stage=stage, channel=channel, recipient=recipient,
                        attempt=attempt.attempts, error_class=error_class,
                        message=f"{error_class} failure, retrying in {delay:.1f}s: {exc}",
                    )
                    logger.warning(
                        "%s send to %s failed (%s), retry %d/%d in %.1fs",
                        channel, recipient, error_class, retries + 1, self._retry.retry_attempts, delay,
                    )
                    await self._sleep(delay)
                    retries += 1
                    continue

                exhausted = self._retry.rule(error_class).retryable
                attempt.outcome = AttemptOutcome.FAILED
                attempt.error_class = error_class
                attempt.error = str(exc)
                await self._audit.arecord(
                    AuditAction.DISPATCH_ATTEMPT, item_id=item_id, status=AuditStatus.FAILURE,
                    stage=stage, channel=channel, recipient=recipient,
                    attempt=attempt.attempts, error_class=error_class,
                    message=("retries exhausted: " if exhausted else "") + str(exc),
                )
                logger.error("%s send to %s failed permanently (%s): %s", channel, recipient, error_class, exc)
                raise PermanentChannelError(
                    f"{channel} send to {recipient} failed: {exc}",
                    retries_exhausted=exhausted, attempts=attempt.attempts,
                    channel=channel, error_class=error_class,
                ) from exc

            attempt.outcome = AttemptOutcome.DELIVERED
            attempt.delivery_id = receipt.delivery_id
            await self._audit.arecord(
                AuditAction.DISPATCH_ATTEMPT, item_id=item_id, status=AuditStatus.SUCCESS,
                stage=stage, channel=channel, recipient=recipient,
                attempt=attempt.attempts, delivery_id=receipt.delivery_id,
                message=f"{channel} reminder delivered",
            )
            return attempt

    async def dispatch_bulk(
        self,
        channel: Channel,
        deliveries: list[Delivery],
        *,
        item_id: str = "",
        stage: int | None = None,
    ) -> list[NotificationAttempt]:
        """Send in channel-sized batches with a pause between batches.

        Failures are isolated per delivery and returned as failed attempts.
        """
        limit = self._limits.get(channel, BatchLimit(size=5, delay=1.0))
        results: list[NotificationAttempt] = []
        for start in range(0, len(deliveries), limit.size):
            batch = deliveries[start:start + limit.size]
            results.extend(await asyncio.gather(*(
                self._dispatch_isolated(channel, d, item_id=item_id, stage=stage) for d in batch
            )))
            if start + limit.size < len(deliveries):
                await self._sleep(limit.delay)
        return results

    async def _dispatch_isolated(
        self, channel: Channel, delivery: Delivery, *, item_id: str, stage: int | None,
    ) -> NotificationAttempt:
        try:
            return await self.dispatch(
                channel, delivery.recipient, delivery.message, item_id=item_id, stage=stage,
            )
        except PermanentChannelError as exc:
            return NotificationAttempt(
                channel=channel, recipient=delivery.recipient, message=delivery.message,
                attempts=exc.attempts, outcome=AttemptOutcome.FAILED,
                error_class=exc.error_class, error=str(exc),
            )
