"""
Azure Cosmos DB database service layer

Thin async facade over the Cosmos SQL API used by the attempt and grading
services. Attempt, answer, grade and idempotency documents share the
attempt_id partition so multi-document writes can go through a
transactional batch; single-document writes are guarded by ETags.
Includes retry with backoff and RU monitoring.
"""

import asyncio
import os
import time
from typing import Any, Dict, List, Optional, Tuple
from azure.core import MatchConditions
from azure.cosmos import ContainerProxy, CosmosClient, DatabaseProxy, PartitionKey
from azure.cosmos.cosmos_client import ConnectionPolicy
from azure.identity import DefaultAzureCredential
from azure.cosmos.exceptions import (
    CosmosResourceNotFoundError,
    CosmosHttpResponseError,
    CosmosResourceExistsError,
    CosmosAccessConditionFailedError,
    CosmosBatchOperationError,
)
import logging
from constants import CONTAINER

logger = logging.getLogger(__name__)

# Batch operation tuples in the shape accepted by ContainerProxy.execute_item_batch
BatchOperation = Tuple[Any, ...]


class WriteConflictError(Exception):
    """A create-only write found an existing document, or an ETag no longer matched."""


class BatchConflictError(WriteConflictError):
    """A transactional batch was rolled back; failed_index points at the offending operation."""

    def __init__(self, message: str, failed_index: int):
        super().__init__(message)
        self.failed_index = failed_index


def batch_create(item: Dict[str, Any]) -> BatchOperation:
    return ("create", (item,))


def batch_replace(item: Dict[str, Any], etag: Optional[str] = None) -> BatchOperation:
    """Replace by id; with an etag the whole batch fails if the document changed."""
    if etag:
        return ("replace", (item["id"], item), {"if_match_etag": etag})
    return ("replace", (item["id"], item))


class CosmosDBMetrics:
    """Class to track Cosmos DB metrics and performance"""

    def __init__(self):
        self.total_request_charge = 0.0
        self.operation_count = 0
        self.operation_times = []

    def record_operation(self, request_charge: float, duration_ms: float, operation_type: str):
        """Record an operation's metrics"""
        self.total_request_charge += request_charge
        self.operation_count += 1
        self.operation_times.append(duration_ms)

        logger.debug(f"Cosmos DB {operation_type}: {request_charge} RU, {duration_ms:.2f}ms")

    def get_average_ru_per_operation(self) -> float:
        return self.total_request_charge / self.operation_count if self.operation_count > 0 else 0.0

    def get_average_duration(self) -> float:
        return sum(self.operation_times) / len(self.operation_times) if self.operation_times else 0.0


# Global metrics instance for monitoring
cosmos_metrics = CosmosDBMetrics()


class CosmosRetryConfig:
    """Configuration for Cosmos DB retry logic"""
    MAX_RETRIES = 3
    INITIAL_DELAY = 1.0  # seconds
    MAX_DELAY = 10.0     # seconds
    BACKOFF_MULTIPLIER = 2.0

    # HTTP status codes that should trigger a retry
    RETRYABLE_STATUS_CODES = {429, 503, 408, 500, 502, 504}


async def cosmos_retry_wrapper(operation, *args, operation_type: str = "unknown", **kwargs):
    """
    Wrapper for Cosmos DB operations with exponential backoff retry logic.
    Precondition and conflict failures (409/412) are never retried here;
    the caller re-reads and decides again.
    """
    config = CosmosRetryConfig()
    last_exception = None
    start_time = time.time()

    for attempt in range(config.MAX_RETRIES + 1):
        try:
            result = await operation(*args, **kwargs) if asyncio.iscoroutinefunction(operation) else operation(*args, **kwargs)

            duration_ms = (time.time() - start_time) * 1000

            request_charge = 0.0
            if hasattr(result, 'headers') and 'x-ms-request-charge' in result.headers:
                request_charge = float(result.headers['x-ms-request-charge'])
            elif hasattr(result, 'request_charge'):
                request_charge = float(result.request_charge)

            cosmos_metrics.record_operation(request_charge, duration_ms, operation_type)

            if request_charge > 50.0:
                logger.warning(f"High RU operation: {operation_type} consumed {request_charge} RU")

            return result

        except CosmosHttpResponseError as e:
            last_exception = e
            status_code = e.status_code

            if status_code not in config.RETRYABLE_STATUS_CODES or attempt == config.MAX_RETRIES:
                if status_code not in (404, 409, 412):
                    logger.error(f"Cosmos DB {operation_type} failed after {attempt + 1} attempts: {e}")
                raise

            delay = min(
                config.INITIAL_DELAY * (config.BACKOFF_MULTIPLIER ** attempt),
                config.MAX_DELAY
            )

            # For throttling (429), respect the retry-after header if present
            if status_code == 429:
                retry_after = (e.headers or {}).get('x-ms-retry-after-ms')
                if retry_after:
                    delay = max(delay, float(retry_after) / 1000.0)

            logger.warning(f"Cosmos DB {operation_type} failed (attempt {attempt + 1}/{config.MAX_RETRIES + 1}): {e}. Retrying in {delay}s")
            await asyncio.sleep(delay)

    raise last_exception


class CosmosDBService:
    """Service layer for Azure Cosmos DB operations"""

    def __init__(self, database_client: DatabaseProxy):
        self.database_client = database_client
        self._containers = {}

    def get_container(self, container_name: str) -> ContainerProxy:
        """Get or create container client"""
        if container_name not in self._containers:
            self._containers[container_name] = self.database_client.get_container_client(container_name)
        return self._containers[container_name]

    async def ensure_containers_exist(self):
        """Ensure required containers exist with proper partition keys and indexing."""
        containers_config = {
            CONTAINER["EXAMS"]: {"pk": "/id", "index_policy": {
                "indexingMode": "consistent",
                "automatic": True,
                "includedPaths": [{"path": "/*"}],
                "excludedPaths": [{"path": "/questions/*"}]
            }},
            CONTAINER["ATTEMPTS"]: {"pk": "/attempt_id", "index_policy": {
                "indexingMode": "consistent",
                "automatic": True,
                "includedPaths": [
                    {"path": "/doc_type/?"},
                    {"path": "/exam_id/?"},
                    {"path": "/status/?"},
                    {"path": "/*"}
                ],
                "excludedPaths": [
                    {"path": "/segments/*"},
                    {"path": "/feedback/?"},
                    {"path": "/rationale/?"}
                ]
            }},
            CONTAINER["PROCTOR_EVENTS"]: {"pk": "/attempt_id"},
        }
        for container_name, cfg in containers_config.items():
            try:
                container = self.database_client.get_container_client(container_name)
                container.read()
                logger.info(f"Container '{container_name}' already exists")
            except CosmosResourceNotFoundError:
                create_kwargs = {
                    "id": container_name,
                    "partition_key": PartitionKey(path=cfg["pk"]),
                }
                if "index_policy" in cfg:
                    create_kwargs["indexing_policy"] = cfg["index_policy"]
                try:
                    self.database_client.create_container(**create_kwargs)
                    logger.info(f"Created container '{container_name}' with pk '{cfg['pk']}'")
                except CosmosHttpResponseError as e:
                    logger.error(f"Failed to create container '{container_name}': {e}")
                    raise

    # CRUD Operations

    async def create_item(self, container_name: str, item: Dict[str, Any]) -> Dict[str, Any]:
        """Create-only write. Raises WriteConflictError if the id is already taken."""
        container = self.get_container(container_name)

        async def _create_operation():
            return container.create_item(body=item)

        try:
            return await cosmos_retry_wrapper(_create_operation, operation_type="create")
        except CosmosResourceExistsError as e:
            raise WriteConflictError(f"Item already exists in '{container_name}': {item.get('id')}") from e

    async def read_item(self, container_name: str, item_id: str, partition_key: str) -> Optional[Dict[str, Any]]:
        """Read a specific item by ID and partition key"""
        container = self.get_container(container_name)

        async def _read_operation():
            return container.read_item(item=item_id, partition_key=partition_key)

        try:
            return await cosmos_retry_wrapper(_read_operation, operation_type="read")
        except CosmosResourceNotFoundError:
            return None

    async def replace_item(self, container_name: str, item: Dict[str, Any], etag: Optional[str] = None) -> Dict[str, Any]:
        """Replace an item; with an etag this is a compare-and-write."""
        container = self.get_container(container_name)
        kwargs: Dict[str, Any] = {}
        if etag:
            kwargs = {"etag": etag, "match_condition": MatchConditions.IfNotModified}

        async def _replace_operation():
            return container.replace_item(item=item["id"], body=item, **kwargs)

        try:
            return await cosmos_retry_wrapper(_replace_operation, operation_type="replace")
        except CosmosAccessConditionFailedError as e:
            raise WriteConflictError(f"ETag mismatch on '{item['id']}' in '{container_name}'") from e
        except CosmosResourceNotFoundError as e:
            raise WriteConflictError(f"Item '{item['id']}' vanished from '{container_name}'") from e

    async def execute_batch(self, container_name: str, operations: List[BatchOperation], partition_key: str) -> List[Dict[str, Any]]:
        """
        Commit operations atomically inside one logical partition.
        Either every operation is applied or none is.
        """
        container = self.get_container(container_name)

        async def _batch_operation():
            return container.execute_item_batch(batch_operations=operations, partition_key=partition_key)

        try:
            results = await cosmos_retry_wrapper(_batch_operation, operation_type="batch")
        except CosmosBatchOperationError as e:
            raise BatchConflictError(
                f"Transactional batch in '{container_name}' rolled back at operation {e.error_index}",
                failed_index=e.error_index,
            ) from e
        return [r.get("resourceBody", {}) if isinstance(r, dict) else r for r in results]

    async def query_items(self, container_name: str, query: str, parameters: Optional[List[Dict[str, Any]]] = None,
                          partition_key: Optional[str] = None) -> List[Dict[str, Any]]:
        """Query items using SQL syntax; scoped to one partition when partition_key is given"""
        container = self.get_container(container_name)

        def _query_operation():
            if partition_key is not None:
                return list(container.query_items(query=query, parameters=parameters or [], partition_key=partition_key))
            return list(container.query_items(query=query, parameters=parameters or [], enable_cross_partition_query=True))

        try:
            return await cosmos_retry_wrapper(_query_operation, operation_type="query")
        except CosmosHttpResponseError as e:
            logger.error(f"Query failed in '{container_name}': {e}")
            raise

    @staticmethod
    def _build_filter(filter_dict: Dict[str, Any]) -> Tuple[List[str], List[Dict[str, Any]]]:
        conditions = []
        parameters = []
        for key, value in filter_dict.items():
            param_name = f"@{key}"
            conditions.append(f"c.{key} = {param_name}")
            parameters.append({"name": param_name, "value": value})
        return conditions, parameters

    async def find_many(self, container_name: str, filter_dict: Dict[str, Any], partition_key: Optional[str] = None,
                        limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Find multiple items matching the equality filter"""
        conditions, parameters = self._build_filter(filter_dict)

        query = "SELECT * FROM c"
        if conditions:
            query += f" WHERE {' AND '.join(conditions)}"
        if limit:
            query += f" OFFSET 0 LIMIT {int(limit)}"

        return await self.query_items(container_name, query, parameters, partition_key=partition_key)

    def get_metrics(self) -> Dict[str, Any]:
        """Get current performance metrics"""
        return {
            "total_request_charge": cosmos_metrics.total_request_charge,
            "operation_count": cosmos_metrics.operation_count,
            "average_ru_per_operation": cosmos_metrics.get_average_ru_per_operation(),
            "average_duration_ms": cosmos_metrics.get_average_duration()
        }


async def get_cosmosdb_service(database_client: DatabaseProxy) -> CosmosDBService:
    """Get initialized CosmosDB service with containers"""
    service = CosmosDBService(database_client)
    await service.ensure_containers_exist()
    return service


def create_cosmos_client(endpoint: str) -> CosmosClient:
    """Create Cosmos DB client; account key if configured, managed identity otherwise"""
    connection_policy = ConnectionPolicy()
    connection_policy.request_timeout = 30

    preferred_locations = os.getenv("COSMOS_DB_PREFERRED_LOCATIONS", "").split(",")
    if preferred_locations and preferred_locations[0]:
        connection_policy.preferred_locations = [loc.strip() for loc in preferred_locations]

    connection_policy.retry_options.max_retry_attempt_count = 3
    connection_policy.retry_options.fixed_retry_interval_in_milliseconds = 1000
    connection_policy.retry_options.max_wait_time_in_seconds = 10

    key = os.getenv("COSMOS_DB_KEY")
    credential = key if key else DefaultAzureCredential()

    return CosmosClient(
        url=endpoint,
        credential=credential,
        connection_policy=connection_policy,
        consistency_level=os.getenv("COSMOS_DB_CONSISTENCY_LEVEL", "Session"),
    )
