"""
Fan-out/fan-in helper for running several executors at once.

Every branch runs to completion independently; a failing branch is recorded
and does not cancel its siblings. Results come back in submission order.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class FanOutStatus(str, Enum):
	"""Aggregate outcome of a fan-out."""
	COMPLETED = "completed"
	PARTIAL_FAILURE = "partial_failure"
	FAILED = "failed"


@dataclass
class Branch(Generic[T]):
	"""One unit of concurrent work."""
	name: str
	data: T


@dataclass
class BranchResult(Generic[R]):
	"""Outcome of one branch."""
	name: str
	success: bool
	result: Optional[R] = None
	error: Optional[str] = None
	exception: Optional[BaseException] = None


@dataclass
class FanOutSummary(Generic[R]):
	"""Joined results of every branch."""
	status: FanOutStatus
	results: list[BranchResult[R]] = field(default_factory=list)

	@property
	def succeeded(self) -> list[BranchResult[R]]:
		return [r for r in self.results if r.success]

	@property
	def failed(self) -> list[BranchResult[R]]:
		return [r for r in self.results if not r.success]


class FanOut(Generic[T, R]):
	"""
	Runs branches concurrently, bounded by a semaphore, and joins them.

	Cancelling the awaiting task cancels every running branch.
	"""

	def __init__(self, max_concurrency: int = 4):
		self.max_concurrency = max_concurrency

	async def run(
		self,
		branches: list[Branch[T]],
		handler: Callable[[Branch[T]], Awaitable[R]],
	) -> FanOutSummary[R]:
		"""
		Run handler over every branch.

		Args:
			branches: Work to fan out
			handler: Async function run once per branch; exceptions mark the branch failed

		Returns:
			FanOutSummary with one result per branch, in branch order
		"""
		if not branches:
			return FanOutSummary(status=FanOutStatus.COMPLETED)

		semaphore = asyncio.Semaphore(self.max_concurrency)

		async def run_branch(branch: Branch[T]) -> BranchResult[R]:
			async with semaphore:
				try:
					value = await handler(branch)
				except asyncio.CancelledError:
					raise
				except Exception as e:
					logger.warning(f"{branch.name} failed: {e}")
					return BranchResult(name=branch.name, success=False, error=str(e), exception=e)
				return BranchResult(name=branch.name, success=True, result=value)

		# Fan out
		tasks = [asyncio.create_task(run_branch(branch)) for branch in branches]
		try:
			results = list(await asyncio.gather(*tasks))
		except asyncio.CancelledError:
			for task in tasks:
				task.cancel()
			await asyncio.gather(*tasks, return_exceptions=True)
			raise

		# Fan in
		succeeded = sum(1 for r in results if r.success)
		if succeeded == len(results):
			status = FanOutStatus.COMPLETED
		elif succeeded == 0:
			status = FanOutStatus.FAILED
		else:
			status = FanOutStatus.PARTIAL_FAILURE

		return FanOutSummary(status=status, results=results)
