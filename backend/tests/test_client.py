import httpx
import pytest

from schemaflow.pipeline.client import IngestionClient
from schemaflow.pipeline.errors import MappingSaveError, TransportError


def replying(status_code: int, detail: str) -> httpx.AsyncClient:
    transport = httpx.MockTransport(
        lambda request: httpx.Response(status_code, json={"detail": detail})
    )
    return httpx.AsyncClient(transport=transport, base_url="http://testserver/api")


@pytest.mark.asyncio
async def test_missing_mapping_is_none() -> None:
    async with replying(404, "Mapping not found.") as http:
        assert await IngestionClient(http).get_column_mapping(1) is None


@pytest.mark.asyncio
async def test_mapping_lookup_failure_is_a_transport_error() -> None:
    async with replying(500, "Database unavailable.") as http:
        with pytest.raises(TransportError) as exc_info:
            await IngestionClient(http).get_column_mapping(1)

    assert not isinstance(exc_info.value, MappingSaveError)
    assert exc_info.value.status_code == 500
    assert exc_info.value.message == "Database unavailable."
    assert exc_info.value.file_id == 1
