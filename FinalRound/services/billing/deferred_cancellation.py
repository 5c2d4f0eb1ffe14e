"""
Deferred-Cancellation Scheduler

`schedule` only flips the local flag; the processor is called when a
BILLING.SUBSCRIPTION.CYCLE.COMPLETED webhook arrives while the flag is set.
A failed processor call leaves the flag in place so the next cycle event
retries it.
"""

from __future__ import annotations

from typing import Optional

from FinalRound.infrastructure.paypal.gateway import ProcessorGateway
from FinalRound.observability.logging import LogModule, get_module_logger
from FinalRound.services.billing.events import CancelAtProcessor, ScheduleCancelRequested
from FinalRound.services.billing.state_machine import Transition, transition
from FinalRound.services.billing.subscription_store import SubscriptionStore
from FinalRound.utils.exceptions import ConfigException, GatewayError
from FinalRound.utils.time import utcnow

logger = get_module_logger(LogModule.BILLING)


class DeferredCancellationScheduler:
    def __init__(self, store: SubscriptionStore, gateway: ProcessorGateway):
        self.store = store
        self.gateway = gateway

    def schedule(self, user_id: int, subscription_id: Optional[str] = None) -> Transition:
        """Mark the user's active subscription for cancellation at period end."""
        now = utcnow()
        result = self.store.apply(
            user_id,
            lambda state: transition(state, ScheduleCancelRequested(subscription_id), now),
        )
        logger.info(
            "Scheduled cancellation at period end for user %s (subscription %s)",
            user_id, result.state.subscription_id,
        )
        return result

    async def resolve(self, effect: CancelAtProcessor) -> bool:
        """Issue the processor cancel; False when it failed and must wait for the next cycle."""
        try:
            await self.gateway.cancel_subscription(effect.subscription_id, effect.reason)
        except (GatewayError, ConfigException) as e:
            logger.warning(
                "Deferred cancellation of %s failed, will retry on next cycle: %s",
                effect.subscription_id, e.message,
            )
            return False

        logger.info("Deferred cancellation sent for subscription %s", effect.subscription_id)
        return True
