"""Collection sources -- where the MCP bridge learns which tools a collection exposes."""

from __future__ import annotations

from abc import ABC, abstractmethod

from tool_sandbox.config import CollectionConfig
from tool_sandbox.models import Collection, CollectionTool, ExecutorConfig, ToolReference
from tool_sandbox.remote import parse_executor_config


class CollectionSource(ABC):
	"""Read-only lookup of collections, queried fresh on every request."""

	@abstractmethod
	async def get(self, collection_id: str) -> Collection | None:
		"""Return the collection, or None if it does not exist."""


def collection_from_config(collection_id: str, cc: CollectionConfig) -> Collection:
	executor: ExecutorConfig | None = None
	if cc.executor is not None:
		executor = parse_executor_config(
			cc.executor.type,
			{"url": cc.executor.url, "apiKey": cc.executor.api_key},
		)
	return Collection(
		id=collection_id,
		name=cc.name or collection_id,
		description=cc.description,
		is_public=cc.public,
		executor=executor,
		tools=[
			CollectionTool(
				reference=ToolReference(t.package, t.export, t.version),
				description=t.description,
				input_schema=dict(t.input_schema),
				environment=dict(t.env),
			)
			for t in cc.tools
		],
	)


class StaticCollectionSource(CollectionSource):
	"""Collections declared in the ``[collections.<id>]`` config tables."""

	def __init__(self, collections: dict[str, Collection] | None = None) -> None:
		self._collections = dict(collections or {})

	@classmethod
	def from_config(cls, configs: dict[str, CollectionConfig]) -> StaticCollectionSource:
		return cls({cid: collection_from_config(cid, cc) for cid, cc in configs.items()})

	def add(self, collection: Collection) -> None:
		self._collections[collection.id] = collection

	async def get(self, collection_id: str) -> Collection | None:
		return self._collections.get(collection_id)
