"""
数据拉取执行器

支持两种模式：
- SYNTHETIC：按请求标识确定性生成 K 线数据（测试、离线运行）
- LIVE：通过外部数据连接器拉取
"""
import hashlib
import logging
import random
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from ..exceptions import ConnectorRequestError, ConnectorUnavailableError
from ..integrations.connectors import DataConnector
from ..models.execution import FailureCategory
from ..models.frozen import thaw
from ..models.workflow import NodeType, WorkflowNode
from .base import NodeExecutionContext, NodeExecutor, NodeResult


logger = logging.getLogger(__name__)


MODE_SYNTHETIC = "SYNTHETIC"
MODE_LIVE = "LIVE"


class DataFetchNodeExecutor(NodeExecutor):
    """数据拉取执行器"""

    output_fields = frozenset({
        "symbol", "connectorCode", "mode", "bars", "latestPrice",
        "changePct", "volatility", "recordCount", "data", "_meta",
    })

    def __init__(
        self,
        node_type: NodeType = NodeType.DATA_FETCH,
        connector: Optional[DataConnector] = None,
        synthetic_by_default: bool = True
    ):
        self.node_types = (node_type,)
        self.connector = connector
        self.synthetic_by_default = synthetic_by_default

    def resolve_mode(self, node: WorkflowNode) -> str:
        """确定拉取模式"""
        config = node.config
        if "mode" in config:
            return str(config["mode"]).upper()
        if "useMockData" in config:
            return MODE_SYNTHETIC if config["useMockData"] else MODE_LIVE
        return MODE_SYNTHETIC if self.synthetic_by_default else MODE_LIVE

    async def execute(self, context: NodeExecutionContext) -> NodeResult:
        mode = self.resolve_mode(context.node)
        if mode == MODE_SYNTHETIC:
            return NodeResult.success(self._synthetic(context))
        if mode == MODE_LIVE:
            return await self._live(context)
        return NodeResult.failed(f"Unsupported data fetch mode: {mode}")

    # 合成数据

    def _seed(self, context: NodeExecutionContext, symbol: str) -> int:
        seed_source = context.config.get("seed") or context.request_identity
        digest = hashlib.sha256(f"{seed_source}:{context.node.id}:{symbol}".encode("utf-8")).hexdigest()
        return int(digest[:16], 16)

    def _synthetic(self, context: NodeExecutionContext) -> Dict[str, Any]:
        config = context.config
        symbol = str(config.get("symbol", "C0"))
        lookback = max(1, int(config.get("lookbackDays", 30)))
        base_price = float(config.get("basePrice", 2500.0))
        as_of = date.fromisoformat(config["asOf"]) if config.get("asOf") else date.today()

        rng = random.Random(self._seed(context, symbol))
        bars: List[Dict[str, Any]] = []
        close = base_price
        for offset in range(lookback - 1, -1, -1):
            open_price = close
            close = round(max(1.0, open_price * (1 + rng.uniform(-0.02, 0.02))), 2)
            high = round(max(open_price, close) * (1 + rng.uniform(0, 0.01)), 2)
            low = round(min(open_price, close) * (1 - rng.uniform(0, 0.01)), 2)
            bars.append({
                "date": (as_of - timedelta(days=offset)).isoformat(),
                "open": round(open_price, 2),
                "high": high,
                "low": low,
                "close": close,
                "volume": rng.randint(1000, 50000),
            })

        output = self._summarize(bars)
        output.update({
            "symbol": symbol,
            "connectorCode": config.get("connectorCode"),
            "mode": MODE_SYNTHETIC,
            "_meta": {"executor": self.name},
        })
        return output

    # 实时数据

    async def _live(self, context: NodeExecutionContext) -> NodeResult:
        config = context.config
        connector_code = config.get("connectorCode")
        if not connector_code:
            return NodeResult.failed("Live data fetch requires connectorCode")
        if self.connector is None:
            return NodeResult.failed("No data connector configured for live mode")

        query = thaw(config.get("query", {}))
        if "symbol" in config:
            query.setdefault("symbol", config["symbol"])
        if "lookbackDays" in config:
            query.setdefault("lookbackDays", config["lookbackDays"])

        try:
            payload, used_code = await self._fetch_with_fallback(
                connector_code, config.get("fallbackConnectorCode"), query
            )
        except ConnectorUnavailableError as e:
            logger.warning(f"Connector unavailable for node {context.node.id}: {e}")
            return NodeResult.failed(
                str(e),
                category=FailureCategory.CONNECTOR_UNAVAILABLE,
                retryable=True
            )
        except ConnectorRequestError as e:
            return NodeResult.failed(str(e))

        bars = self._extract_bars(payload)
        output: Dict[str, Any] = self._summarize(bars) if bars else {"recordCount": 0}
        output.update({
            "symbol": config.get("symbol"),
            "connectorCode": used_code,
            "mode": MODE_LIVE,
            "data": payload if not bars else None,
            "_meta": {"executor": self.name, "fallback": used_code != connector_code},
        })
        return NodeResult.success(output)

    async def _fetch_with_fallback(self, primary: str, fallback: Optional[str], query: Dict[str, Any]):
        try:
            return await self.connector.fetch(primary, query), primary
        except ConnectorUnavailableError:
            if not fallback:
                raise
            logger.info(f"Primary connector {primary} unavailable, trying fallback {fallback}")
            return await self.connector.fetch(fallback, query), fallback

    @staticmethod
    def _extract_bars(payload: Any) -> List[Dict[str, Any]]:
        if isinstance(payload, list):
            candidates = payload
        elif isinstance(payload, dict):
            candidates = payload.get("bars") or payload.get("data") or []
        else:
            return []
        if not isinstance(candidates, list):
            return []
        return [bar for bar in candidates if isinstance(bar, dict) and "close" in bar]

    @staticmethod
    def _summarize(bars: List[Dict[str, Any]]) -> Dict[str, Any]:
        closes = [float(bar["close"]) for bar in bars]
        first, last = closes[0], closes[-1]
        change_pct = round((last - first) / first * 100, 4) if first else 0.0
        returns = [
            (closes[i] - closes[i - 1]) / closes[i - 1]
            for i in range(1, len(closes)) if closes[i - 1]
        ]
        if returns:
            mean = sum(returns) / len(returns)
            volatility = round((sum((r - mean) ** 2 for r in returns) / len(returns)) ** 0.5 * 100, 4)
        else:
            volatility = 0.0
        return {
            "bars": bars,
            "latestPrice": last,
            "changePct": change_pct,
            "volatility": volatility,
            "recordCount": len(bars),
        }
