from abc import ABC, abstractmethod
from typing import Any


class AbstractOriginClient(ABC):
	"""Interface for upstream sources consulted on cache misses."""

	@abstractmethod
	async def fetch_json(self, path: str) -> Any:
		"""Fetch a JSON document from the origin.

		Args:
			path: Resource path relative to the origin base URL.

		Returns:
			Any: Decoded JSON document.

		Raises:
			OriginAppError: If the origin fails, times out or the resource is missing.
		"""
		...

	async def aclose(self) -> None:
		"""Release resources held by the client."""
		return None
