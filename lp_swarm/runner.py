"""
Multi-wallet runner.

Fans the orchestrator out over many wallets, either one after another or in
waves of at most `max_concurrency` wallets with a pause between waves. A
wallet's failure is recorded in its own result and never stops the others.
"""

import asyncio
from dataclasses import dataclass, field
from typing import List, Sequence

from .errors import classify_error
from .orchestrator import RunStatus, WalletOrchestrator, WalletRunResult
from .utils import logger, format_address, sanitize_error_message


@dataclass
class BatchResult:
    results: List[WalletRunResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.total - self.successful


class MultiWalletRunner:
    def __init__(
        self,
        orchestrator: WalletOrchestrator,
        max_concurrency: int = 5,
        wallet_pause: float = 2.0,
        batch_pause: float = 5.0,
        sleep=asyncio.sleep,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.orchestrator = orchestrator
        self.max_concurrency = max_concurrency
        self.wallet_pause = wallet_pause
        self.batch_pause = batch_pause
        self.sleep = sleep

    async def _run_one(self, index: int, wallet, resume: bool, fresh: bool, dry_run: bool) -> WalletRunResult:
        try:
            result = await self.orchestrator.run(wallet, resume=resume, fresh=fresh, dry_run=dry_run)
        except Exception as e:
            # run() reports its own failures; this only catches bugs around it
            logger.exception(f"Unexpected error for {format_address(wallet.address)}")
            result = WalletRunResult(
                wallet=wallet.address, status=RunStatus.FAILED,
                error_code=classify_error(e), error=sanitize_error_message(e),
            )
        result.index = index
        return result

    async def run_all(self, wallets: Sequence, resume: bool = True, fresh: bool = False,
                      dry_run: bool = False, sequential: bool = False) -> BatchResult:
        batch = BatchResult()
        if not wallets:
            return batch

        if sequential:
            for i, wallet in enumerate(wallets):
                batch.results.append(await self._run_one(i, wallet, resume, fresh, dry_run))
                if i < len(wallets) - 1 and self.wallet_pause > 0:
                    await self.sleep(self.wallet_pause)
        else:
            for start in range(0, len(wallets), self.max_concurrency):
                wave = wallets[start:start + self.max_concurrency]
                logger.info(
                    f"Running wallets {start + 1}-{start + len(wave)} of {len(wallets)} "
                    f"(concurrency {self.max_concurrency})"
                )
                results = await asyncio.gather(*(
                    self._run_one(start + i, wallet, resume, fresh, dry_run)
                    for i, wallet in enumerate(wave)
                ))
                batch.results.extend(results)
                if start + self.max_concurrency < len(wallets) and self.batch_pause > 0:
                    await self.sleep(self.batch_pause)

        logger.info(f"Batch finished: {batch.successful}/{batch.total} succeeded, {batch.failed} failed")
        return batch
