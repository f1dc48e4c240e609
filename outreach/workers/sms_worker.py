"""
SMS Worker
Background worker that sends templated SMS to eligible leads in batches

Run as separate process:
    python -m outreach.workers.sms_worker
"""
import asyncio
import logging
import signal
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from outreach.core.config import get_settings
from outreach.domain.errors import DispatchError
from outreach.domain.interfaces.repositories import TenantConfigRepository
from outreach.domain.models.lead import Lead
from outreach.domain.services.batch_selector import BatchSelector
from outreach.services.sms_service import DispatchResult, SMSDispatchService


logger = logging.getLogger(__name__)


class SMSDispatchWorker:
    """
    Background worker for batch SMS dispatch.

    Each cycle, for every tenant with leads to work:
    - Load the tenant config (tenant skipped this cycle if that fails)
    - Select as many eligible leads as the tenant has free slots
    - Send to them concurrently through the dispatch service
    - Count deferrals; the tenant gets no further sends this cycle

    Deferred leads are not queued; they stay eligible and are picked up
    again on a later poll.
    """

    MAX_CONSECUTIVE_ERRORS = 10

    def __init__(
        self,
        service: SMSDispatchService,
        selector: BatchSelector,
        tenant_configs: TenantConfigRepository,
        template_name: str = "default",
        poll_interval: Optional[float] = None
    ):
        self.service = service
        self.selector = selector
        self._tenant_configs = tenant_configs
        self.template_name = template_name
        self.poll_interval = poll_interval if poll_interval is not None else get_settings().worker_poll_interval

        self.running = False

        # Stats
        self._processed = 0
        self._failed = 0
        self._deferred = 0

    async def run(self) -> None:
        """
        Main worker loop.

        Polls all tenants, then sleeps for the poll interval. Unexpected
        errors back off and stop the worker after too many in a row.
        """
        self.running = True
        consecutive_errors = 0

        logger.info("SMS Worker started")

        while self.running:
            try:
                sent = await self.run_cycle()
                consecutive_errors = 0
                if sent == 0:
                    await asyncio.sleep(self.poll_interval)

            except asyncio.CancelledError:
                logger.info("Worker received cancellation signal")
                break
            except Exception as e:
                consecutive_errors += 1
                logger.error(f"Worker error ({consecutive_errors}): {e}", exc_info=True)

                if consecutive_errors >= self.MAX_CONSECUTIVE_ERRORS:
                    logger.critical("Too many consecutive errors, stopping worker")
                    break

                await asyncio.sleep(min(5 * consecutive_errors, 60))

        await self.shutdown()

    async def run_cycle(self) -> int:
        """Run one batch for every active tenant. Returns the number of successful sends."""
        sent = 0
        for tenant_id in await self._tenant_configs.list_tenant_ids():
            if not self.running:
                break
            sent += await self.run_tenant_batch(tenant_id)
        return sent

    async def run_tenant_batch(self, tenant_id: str) -> int:
        """
        Send one batch for a tenant.

        Returns:
            Number of successful sends
        """
        try:
            tenant = await self.service.load_tenant_config(tenant_id)
        except Exception as e:
            logger.error(f"Skipping tenant {tenant_id} this cycle: config unavailable ({e})")
            return 0

        limiter = self.service.limiter
        limiter.configure_tenant(
            tenant_id,
            hourly_limit=tenant.hourly_limit,
            max_concurrent=tenant.max_concurrent,
        )
        slots = limiter.available_slots(tenant_id)
        if slots <= 0:
            return 0

        leads = list(await self.selector.select_eligible(tenant_id, slots))
        if not leads:
            return 0

        logger.info(f"Processing batch of {len(leads)} leads for tenant {tenant_id}")

        results = await asyncio.gather(
            *(self._send_one(lead) for lead in leads)
        )

        sent = sum(1 for r in results if r is not None and r.success)
        if any(r is not None and r.deferred for r in results):
            logger.info(f"Tenant {tenant_id} reached its rate limit; remaining leads wait for next poll")

        return sent

    async def _send_one(self, lead: Lead) -> Optional[DispatchResult]:
        # Tenant company name and default message are filled in by the composer
        try:
            result = await self.service.send(
                lead.id,
                template_name=self.template_name,
                tenant_id=lead.tenant_id,
                lead=lead,
            )
        except DispatchError as e:
            self._failed += 1
            logger.error(f"SMS to lead {lead.id} not sent: {e.message}")
            return None
        except Exception as e:
            self._failed += 1
            logger.error(f"Unexpected error sending SMS to lead {lead.id}: {e}", exc_info=True)
            return None

        if result.deferred:
            self._deferred += 1
        elif result.success:
            self._processed += 1
        else:
            self._failed += 1
        return result

    async def shutdown(self) -> None:
        """Graceful shutdown."""
        logger.info("Shutting down SMS Worker...")
        self.running = False

        logger.info(
            f"SMS Worker shutdown complete. "
            f"Processed: {self._processed}, Failed: {self._failed}, Deferred: {self._deferred}"
        )

    def get_stats(self) -> dict:
        """Get worker statistics."""
        return {
            "running": self.running,
            "processed": self._processed,
            "failed": self._failed,
            "deferred": self._deferred,
        }


async def main():
    """Entry point for running the SMS worker as a separate process."""
    from outreach.api.v1.dependencies import (
        get_batch_selector,
        get_sms_dispatch_service,
        get_tenant_config_repository,
    )

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    worker = SMSDispatchWorker(
        service=get_sms_dispatch_service(),
        selector=get_batch_selector(),
        tenant_configs=get_tenant_config_repository(),
    )

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        worker.running = False

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    finally:
        await worker.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
