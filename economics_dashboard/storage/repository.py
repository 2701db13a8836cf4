from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Sequence, Tuple

from ..metrics.rollups import AsinRollup, DateRollup, EconomicsMetrics, EconomicsTotals
from ..utils.money import quantize, to_decimal

logger = logging.getLogger(__name__)


@dataclass
class MetricsDocument:
    """
    一次摄取运行持久化后的结果文档。

    创建后除 `is_large_dataset` 标记与迁移时清空的 `asin_wise` 外不再修改。
    """

    account_id: str
    region: str
    marketplace: str
    start: Optional[str]
    end: Optional[str]
    currency: str
    totals: EconomicsTotals
    datewise: List[DateRollup] = field(default_factory=list)
    asin_wise: List[AsinRollup] = field(default_factory=list)
    is_large_dataset: bool = False
    source: str = ""
    id: Optional[int] = None
    created_at: Optional[str] = None

    @classmethod
    def from_metrics(
        cls,
        metrics: EconomicsMetrics,
        *,
        account_id: str,
        region: str,
        source: str,
    ) -> "MetricsDocument":
        return cls(
            account_id=account_id,
            region=region,
            marketplace=metrics.marketplace,
            start=metrics.start.isoformat() if metrics.start else None,
            end=metrics.end.isoformat() if metrics.end else None,
            currency=metrics.currency,
            totals=metrics.totals,
            datewise=list(metrics.datewise),
            asin_wise=list(metrics.asin_daily),
            source=source,
        )


@dataclass
class AsinShardRecord:
    """大账号按日期拆分出去的 ASIN 汇总分片。"""

    metrics_id: int
    day: str
    asin_sales: List[AsinRollup] = field(default_factory=list)


@dataclass
class ParentGroupKey:
    """分组聚合查询返回的父体键及其销售额合计。"""

    parent_asin: str
    total_sales: Decimal


class MetricsStore(ABC):
    """
    文档存储契约：经济指标文档、ASIN 分片与原始广告花费。

    所有方法都是协程；超时由具体实现自行保证，核心逻辑不做额外控制。
    """

    @abstractmethod
    async def initialize(self) -> None:
        """准备存储结构。"""

    @abstractmethod
    async def save_document(self, document: MetricsDocument) -> MetricsDocument:
        """写入或更新文档（按 id upsert），返回带 id 的文档。"""

    @abstractmethod
    async def fetch_document(self, metrics_id: int) -> Optional[MetricsDocument]:
        """按 id 读取文档。"""

    @abstractmethod
    async def fetch_latest(self, account_id: str, marketplace: str) -> Optional[MetricsDocument]:
        """读取账号在某站点最新的一份文档。"""

    @abstractmethod
    async def fetch_by_date_range(
        self, account_id: str, marketplace: str, start: date, end: date
    ) -> List[MetricsDocument]:
        """读取日期范围与 [start, end] 有交集的文档。"""

    @abstractmethod
    async def delete_document(self, metrics_id: int) -> bool:
        """删除文档及其全部分片。"""

    @abstractmethod
    async def replace_asin_storage(
        self, metrics_id: int, asin_wise: List[AsinRollup], is_large_dataset: bool
    ) -> None:
        """迁移时替换内嵌 ASIN 集合并更新大数据量标记。"""

    @abstractmethod
    async def insert_shards(self, shards: Sequence[AsinShardRecord]) -> int:
        """批量写入分片，返回写入数量。"""

    @abstractmethod
    def iter_shards(self, metrics_id: int, *, batch_size: int = 50) -> AsyncIterator[AsinShardRecord]:
        """按日期升序分批流式读取分片。"""

    @abstractmethod
    async def count_parent_groups(self, metrics_id: int) -> Tuple[int, int]:
        """返回 (父体分组数, 子体数)。"""

    @abstractmethod
    async def fetch_parent_group_page(self, metrics_id: int, offset: int, limit: int) -> List[ParentGroupKey]:
        """按销售额降序分页返回父体分组键。"""

    @abstractmethod
    async def fetch_group_members(self, metrics_id: int, parent_asins: Sequence[str]) -> List[AsinRollup]:
        """只读取给定父体分组下的按日 ASIN 汇总。"""

    @abstractmethod
    async def record_ad_spend(
        self, account_id: str, marketplace: str, rows: Sequence[Tuple[str, str, Decimal]]
    ) -> int:
        """写入原始广告花费行 (asin, day, spend)。"""

    @abstractmethod
    async def sum_ad_spend_by_asin(self, account_id: str, marketplace: str) -> Dict[str, Decimal]:
        """按 ASIN 汇总广告花费。"""


# 分片内按 ASIN 先合并再按父体分组，保证与内存路径的分组口径一致。
_SHARD_PRODUCTS_CTE = """
WITH items AS (
    SELECT shard.date AS day,
           item.value AS payload,
           json_extract(item.value, '$.asin') AS asin,
           NULLIF(json_extract(item.value, '$.parent_asin'), '') AS parent_asin,
           json_extract(item.value, '$.sales') AS sales
    FROM asin_shards AS shard, json_each(shard.asin_sales) AS item
    WHERE shard.metrics_id = ?
),
products AS (
    SELECT asin,
           COALESCE(MAX(parent_asin), asin) AS group_key,
           SUM(sales) AS sales
    FROM items
    GROUP BY asin
)
"""


class SQLiteMetricsStore(MetricsStore):
    """基于 SQLite（JSON1 扩展）的文档存储实现，阻塞调用放到线程中执行。"""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    async def initialize(self) -> None:
        await asyncio.to_thread(self._initialize)

    def _initialize(self) -> None:
        """初始化数据库文件及表结构。"""

        if not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS metrics_documents (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    region TEXT NOT NULL,
                    marketplace TEXT NOT NULL,
                    start_date TEXT,
                    end_date TEXT,
                    currency TEXT NOT NULL,
                    source TEXT NOT NULL,
                    totals TEXT NOT NULL,
                    datewise TEXT NOT NULL,
                    asin_wise TEXT NOT NULL,
                    is_large_dataset INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_metrics_account
                    ON metrics_documents (account_id, marketplace, created_at);

                CREATE TABLE IF NOT EXISTS asin_shards (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    metrics_id INTEGER NOT NULL,
                    date TEXT NOT NULL,
                    asin_sales TEXT NOT NULL,
                    UNIQUE(metrics_id, date),
                    FOREIGN KEY(metrics_id) REFERENCES metrics_documents(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS advertising_spend (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    marketplace TEXT NOT NULL,
                    asin TEXT NOT NULL,
                    day TEXT NOT NULL,
                    spend REAL NOT NULL,
                    UNIQUE(account_id, marketplace, asin, day)
                );
                """
            )

    async def save_document(self, document: MetricsDocument) -> MetricsDocument:
        return await asyncio.to_thread(self._save_document, document)

    def _save_document(self, document: MetricsDocument) -> MetricsDocument:
        created_at = document.created_at or datetime.now(timezone.utc).isoformat(timespec="seconds")
        values = (
            document.account_id,
            document.region,
            document.marketplace,
            document.start,
            document.end,
            document.currency,
            document.source,
            json.dumps(document.totals.to_payload()),
            json.dumps(
                [
                    {"day": item.day, "sales": str(item.sales), "gross_profit": str(item.gross_profit)}
                    for item in document.datewise
                ]
            ),
            json.dumps([_dated_payload(item) for item in document.asin_wise]),
            int(document.is_large_dataset),
            created_at,
        )
        with self._connect() as conn:
            if document.id is None:
                cursor = conn.execute(
                    """
                    INSERT INTO metrics_documents (
                        account_id, region, marketplace, start_date, end_date,
                        currency, source, totals, datewise, asin_wise,
                        is_large_dataset, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values,
                )
                metrics_id = cursor.lastrowid
            else:
                conn.execute(
                    """
                    UPDATE metrics_documents SET
                        account_id = ?, region = ?, marketplace = ?, start_date = ?, end_date = ?,
                        currency = ?, source = ?, totals = ?, datewise = ?, asin_wise = ?,
                        is_large_dataset = ?, created_at = ?
                    WHERE id = ?
                    """,
                    values + (document.id,),
                )
                metrics_id = document.id
        return replace(document, id=metrics_id, created_at=created_at)

    async def fetch_document(self, metrics_id: int) -> Optional[MetricsDocument]:
        return await asyncio.to_thread(
            self._fetch_one, "SELECT * FROM metrics_documents WHERE id = ?", (metrics_id,)
        )

    async def fetch_latest(self, account_id: str, marketplace: str) -> Optional[MetricsDocument]:
        return await asyncio.to_thread(
            self._fetch_one,
            """
            SELECT * FROM metrics_documents
            WHERE account_id = ? AND marketplace = ?
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (account_id, marketplace),
        )

    def _fetch_one(self, query: str, params: tuple) -> Optional[MetricsDocument]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return _row_to_document(row) if row else None

    async def fetch_by_date_range(
        self, account_id: str, marketplace: str, start: date, end: date
    ) -> List[MetricsDocument]:
        return await asyncio.to_thread(self._fetch_by_date_range, account_id, marketplace, start, end)

    def _fetch_by_date_range(
        self, account_id: str, marketplace: str, start: date, end: date
    ) -> List[MetricsDocument]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM metrics_documents
                WHERE account_id = ? AND marketplace = ?
                  AND start_date <= ? AND end_date >= ?
                ORDER BY start_date ASC, id ASC
                """,
                (account_id, marketplace, end.isoformat(), start.isoformat()),
            ).fetchall()
        return [_row_to_document(row) for row in rows]

    async def delete_document(self, metrics_id: int) -> bool:
        return await asyncio.to_thread(self._delete_document, metrics_id)

    def _delete_document(self, metrics_id: int) -> bool:
        with self._connect() as conn:
            shards = conn.execute("DELETE FROM asin_shards WHERE metrics_id = ?", (metrics_id,)).rowcount
            deleted = conn.execute("DELETE FROM metrics_documents WHERE id = ?", (metrics_id,)).rowcount
        if shards:
            logger.info("Deleted %s ASIN shards for metrics %s", shards, metrics_id)
        return deleted > 0

    async def replace_asin_storage(
        self, metrics_id: int, asin_wise: List[AsinRollup], is_large_dataset: bool
    ) -> None:
        await asyncio.to_thread(self._replace_asin_storage, metrics_id, asin_wise, is_large_dataset)

    def _replace_asin_storage(self, metrics_id: int, asin_wise: List[AsinRollup], is_large_dataset: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE metrics_documents SET asin_wise = ?, is_large_dataset = ? WHERE id = ?",
                (json.dumps([_dated_payload(item) for item in asin_wise]), int(is_large_dataset), metrics_id),
            )

    async def insert_shards(self, shards: Sequence[AsinShardRecord]) -> int:
        return await asyncio.to_thread(self._insert_shards, list(shards))

    def _insert_shards(self, shards: List[AsinShardRecord]) -> int:
        rows = [
            (shard.metrics_id, shard.day, json.dumps([item.to_payload() for item in shard.asin_sales]))
            for shard in shards
        ]
        with self._connect() as conn:
            conn.executemany(
                "INSERT OR REPLACE INTO asin_shards (metrics_id, date, asin_sales) VALUES (?, ?, ?)",
                rows,
            )
        return len(rows)

    async def iter_shards(self, metrics_id: int, *, batch_size: int = 50) -> AsyncIterator[AsinShardRecord]:
        offset = 0
        while True:
            batch = await asyncio.to_thread(self._fetch_shard_batch, metrics_id, offset, batch_size)
            for shard in batch:
                yield shard
            if len(batch) < batch_size:
                return
            offset += batch_size

    def _fetch_shard_batch(self, metrics_id: int, offset: int, limit: int) -> List[AsinShardRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT date, asin_sales FROM asin_shards
                WHERE metrics_id = ?
                ORDER BY date ASC
                LIMIT ? OFFSET ?
                """,
                (metrics_id, limit, offset),
            ).fetchall()
        return [
            AsinShardRecord(
                metrics_id=metrics_id,
                day=row["date"],
                asin_sales=[AsinRollup.from_payload(item, day=row["date"]) for item in json.loads(row["asin_sales"])],
            )
            for row in rows
        ]

    async def count_parent_groups(self, metrics_id: int) -> Tuple[int, int]:
        return await asyncio.to_thread(self._count_parent_groups, metrics_id)

    def _count_parent_groups(self, metrics_id: int) -> Tuple[int, int]:
        with self._connect() as conn:
            row = conn.execute(
                _SHARD_PRODUCTS_CTE
                + """
                SELECT COUNT(DISTINCT group_key) AS groups,
                       COUNT(CASE WHEN asin != group_key THEN 1 END) AS children
                FROM products
                """,
                (metrics_id,),
            ).fetchone()
        return int(row["groups"] or 0), int(row["children"] or 0)

    async def fetch_parent_group_page(self, metrics_id: int, offset: int, limit: int) -> List[ParentGroupKey]:
        return await asyncio.to_thread(self._fetch_parent_group_page, metrics_id, offset, limit)

    def _fetch_parent_group_page(self, metrics_id: int, offset: int, limit: int) -> List[ParentGroupKey]:
        with self._connect() as conn:
            rows = conn.execute(
                _SHARD_PRODUCTS_CTE
                + """
                SELECT group_key, ROUND(SUM(sales), 2) AS total_sales
                FROM products
                GROUP BY group_key
                ORDER BY total_sales DESC, group_key ASC
                LIMIT ? OFFSET ?
                """,
                (metrics_id, limit, offset),
            ).fetchall()
        return [
            ParentGroupKey(parent_asin=row["group_key"], total_sales=quantize(to_decimal(row["total_sales"])))
            for row in rows
        ]

    async def fetch_group_members(self, metrics_id: int, parent_asins: Sequence[str]) -> List[AsinRollup]:
        if not parent_asins:
            return []
        return await asyncio.to_thread(self._fetch_group_members, metrics_id, list(parent_asins))

    def _fetch_group_members(self, metrics_id: int, parent_asins: List[str]) -> List[AsinRollup]:
        placeholders = ", ".join("?" for _ in parent_asins)
        with self._connect() as conn:
            rows = conn.execute(
                _SHARD_PRODUCTS_CTE
                + f"""
                SELECT items.day AS day, items.payload AS payload, products.group_key AS group_key
                FROM items JOIN products ON products.asin = items.asin
                WHERE products.group_key IN ({placeholders})
                ORDER BY items.day ASC, items.asin ASC
                """,
                (metrics_id, *parent_asins),
            ).fetchall()
        members: List[AsinRollup] = []
        for row in rows:
            rollup = AsinRollup.from_payload(json.loads(row["payload"]), day=row["day"])
            # 以 ASIN 级分组键为准，避免同一子体在不同日期挂在不同父体下。
            if row["group_key"] != rollup.asin:
                rollup.parent_asin = row["group_key"]
            members.append(rollup)
        return members

    async def record_ad_spend(
        self, account_id: str, marketplace: str, rows: Sequence[Tuple[str, str, Decimal]]
    ) -> int:
        return await asyncio.to_thread(self._record_ad_spend, account_id, marketplace, list(rows))

    def _record_ad_spend(self, account_id: str, marketplace: str, rows: List[Tuple[str, str, Decimal]]) -> int:
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO advertising_spend (account_id, marketplace, asin, day, spend)
                VALUES (?, ?, ?, ?, ?)
                """,
                [(account_id, marketplace, asin, day, float(spend)) for asin, day, spend in rows],
            )
        return len(rows)

    async def sum_ad_spend_by_asin(self, account_id: str, marketplace: str) -> Dict[str, Decimal]:
        return await asyncio.to_thread(self._sum_ad_spend_by_asin, account_id, marketplace)

    def _sum_ad_spend_by_asin(self, account_id: str, marketplace: str) -> Dict[str, Decimal]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT asin, SUM(spend) AS spend FROM advertising_spend
                WHERE account_id = ? AND marketplace = ?
                GROUP BY asin
                """,
                (account_id, marketplace),
            ).fetchall()
        return {row["asin"]: quantize(to_decimal(row["spend"])) for row in rows}


def _dated_payload(rollup: AsinRollup) -> Dict[str, Any]:
    payload = rollup.to_payload()
    payload["day"] = rollup.day
    return payload


def _row_to_document(row: sqlite3.Row) -> MetricsDocument:
    return MetricsDocument(
        id=row["id"],
        account_id=row["account_id"],
        region=row["region"],
        marketplace=row["marketplace"],
        start=row["start_date"],
        end=row["end_date"],
        currency=row["currency"],
        source=row["source"],
        totals=EconomicsTotals.from_payload(json.loads(row["totals"])),
        datewise=[
            DateRollup(day=item["day"], sales=to_decimal(item["sales"]), gross_profit=to_decimal(item["gross_profit"]))
            for item in json.loads(row["datewise"])
        ],
        asin_wise=[AsinRollup.from_payload(item) for item in json.loads(row["asin_wise"])],
        is_large_dataset=bool(row["is_large_dataset"]),
        created_at=row["created_at"],
    )
