"""
外部数据连接器
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Union

import httpx

from ..exceptions import ConnectorRequestError, ConnectorUnavailableError


logger = logging.getLogger(__name__)


class DataConnector(ABC):
    """数据连接器接口"""

    @abstractmethod
    async def fetch(self, connector_code: str, query: Dict[str, Any]) -> Any:
        """
        拉取外部数据

        Raises:
            ConnectorUnavailableError: 暂时不可用，可重试
            ConnectorRequestError: 请求被拒绝，不可重试
        """
        pass


ConnectorSource = Union[Any, Callable[[Dict[str, Any]], Any], Exception]


class InMemoryDataConnector(DataConnector):
    """内存连接器（测试用）"""

    def __init__(self):
        self.sources: Dict[str, list] = {}
        self.request_count: Dict[str, int] = {}

    def register(self, connector_code: str, *sources: ConnectorSource):
        """登记数据源响应序列，最后一个响应会被重复使用"""
        self.sources[connector_code] = list(sources)

    async def fetch(self, connector_code: str, query: Dict[str, Any]) -> Any:
        self.request_count[connector_code] = self.request_count.get(connector_code, 0) + 1
        scripted = self.sources.get(connector_code)
        if not scripted:
            raise ConnectorUnavailableError(connector_code, "no data source registered")

        source = scripted.pop(0) if len(scripted) > 1 else scripted[0]
        if isinstance(source, Exception):
            raise source
        if callable(source):
            return source(query)
        return source


class HttpDataConnector(DataConnector):
    """基于 httpx 的 REST 数据连接器"""

    def __init__(
        self,
        endpoints: Dict[str, str],
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None
    ):
        self.endpoints = dict(endpoints)
        self.timeout = timeout
        self.headers = headers or {"Accept": "application/json"}
        self.client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def initialize(self):
        """初始化 HTTP 客户端"""
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.headers,
                follow_redirects=True,
            )

    async def close(self):
        """关闭 HTTP 客户端"""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def fetch(self, connector_code: str, query: Dict[str, Any]) -> Any:
        url = self.endpoints.get(connector_code)
        if not url:
            raise ConnectorRequestError(connector_code, "no endpoint configured")

        await self.initialize()
        try:
            response = await self.client.get(url, params=query)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code == 429 or status_code >= 500:
                raise ConnectorUnavailableError(connector_code, f"HTTP {status_code}") from e
            raise ConnectorRequestError(connector_code, f"HTTP {status_code}") from e
        except httpx.RequestError as e:
            raise ConnectorUnavailableError(connector_code, str(e)) from e

        logger.debug(f"Fetched {url} for connector {connector_code}", extra={"status": response.status_code})
        try:
            return response.json()
        except ValueError as e:
            raise ConnectorRequestError(connector_code, "response is not valid JSON") from e
