"""经济数据仪表盘的配置模型，支持环境变量加载。"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

# 各区域允许的站点，区域与站点组合不合法时在任何拉取动作前直接拒绝。
REGION_VALID_MARKETPLACES: Dict[str, List[str]] = {
    "NA": ["US", "CA", "MX", "BR"],
    "EU": ["IE", "ES", "UK", "FR", "BE", "NL", "DE", "IT", "SE", "ZA", "PL", "EG", "TR", "SA", "AE", "IN"],
    "FE": ["SG", "AU", "JP"],
}

MARKETPLACE_IDS: Dict[str, str] = {
    "US": "ATVPDKIKX0DER",
    "CA": "A2EUQ1WTGCTBG2",
    "MX": "A1AM78C64UM0Y8",
    "BR": "A2Q3Y263D00KWC",
    "IE": "A28R8C7NBKEWEA",
    "ES": "A1RKKUPIHCS9HS",
    "UK": "A1F83G8C2ARO7P",
    "FR": "A13V1IB3VIYZZH",
    "BE": "AMEN7PMS3EDWL",
    "NL": "A1805IZSGTT6HS",
    "DE": "A1PA6795UKMFR9",
    "IT": "APJ6JRA9NG5V4",
    "SE": "A2NODRKZP88ZB9",
    "ZA": "AE08WJ6YKNBMC",
    "PL": "A1C3SOZRARQ6R3",
    "EG": "ARBP9OOSHTCHU",
    "TR": "A33AVAJ2PDY3EV",
    "SA": "A17E79C6D8DWNP",
    "AE": "A2VIGQ35RCS4UG",
    "IN": "A21TJRUUN4KGV",
    "SG": "A19VAU5U5O7RUS",
    "AU": "A39IBJ37TRP1C6",
    "JP": "A1VC38T7YXB528",
}


class InvalidMarketplaceError(ValueError):
    """区域与站点组合不合法。"""


def validate_region_marketplace(region: str, marketplace: str) -> None:
    """
    功能说明:
        校验区域与站点组合，必须在发起任何拉取或聚合之前调用。
    参数:
        region (str): 区域代码，NA/EU/FE。
        marketplace (str): 站点代码，如 US/DE/JP。
    异常:
        InvalidMarketplaceError: 区域未知或站点不属于该区域。
    """
    valid = REGION_VALID_MARKETPLACES.get((region or "").upper())
    if valid is None:
        raise InvalidMarketplaceError(
            f"Unknown region {region!r}. Valid regions: {', '.join(sorted(REGION_VALID_MARKETPLACES))}"
        )
    if (marketplace or "").upper() not in valid:
        raise InvalidMarketplaceError(
            f"Invalid marketplace {marketplace!r} for region {region}. Valid marketplaces: {', '.join(valid)}"
        )


@dataclass
class AmazonCredentialConfig:
    """
    存放 Amazon PAAPI 所需的访问凭证，用于商品目录查询。

    属性:
        access_key (str): Amazon 提供的访问密钥。
        secret_key (str): 与访问密钥配套的密钥，用于签名。
        associate_tag (Optional[str]): 推广关联 ID，可为空。
        marketplace (str): 市场代码，默认使用 `US`。
    """

    access_key: str
    secret_key: str
    associate_tag: Optional[str] = None
    marketplace: str = "US"

    @property
    def is_mock(self) -> bool:
        return self.access_key in {"", "mock"} or self.secret_key in {"", "mock"}

    @classmethod
    def from_env(cls, prefix: str = "AMAZON_") -> "AmazonCredentialConfig":
        """
        功能说明:
            从环境变量读取 Amazon 凭证配置，缺失时回退到 mock。
        参数:
            prefix (str): 变量名前缀，允许在多环境中灵活切换。
        返回:
            AmazonCredentialConfig: 填充完成的配置实例。
        """
        access_key = os.getenv(f"{prefix}ACCESS_KEY", "")
        secret_key = os.getenv(f"{prefix}SECRET_KEY", "")
        associate_tag = os.getenv(f"{prefix}ASSOCIATE_TAG")
        marketplace = os.getenv(f"{prefix}MARKETPLACE", "US")
        # 凭证缺失时自动回退到 mock，避免阻断仅使用本地数据的场景。
        if not access_key or not secret_key:
            return cls(
                access_key="mock",
                secret_key="mock",
                associate_tag=associate_tag,
                marketplace=marketplace,
            )
        return cls(
            access_key=access_key,
            secret_key=secret_key,
            associate_tag=associate_tag,
            marketplace=marketplace,
        )


@dataclass
class EngineConfig:
    """
    聚合引擎与分页查询的调优参数。

    属性:
        shard_threshold (int): ASIN 数量达到该值时改用分片存储。
        yield_every (int): 大循环中每处理多少条让出一次事件循环。
        page_size (int): 默认分页大小。
        shard_batch_size (int): 流式读取分片时每批的文档数。
        window_days (int): 未指定日期时默认拉取的天数。
        max_age_hours (float): 最新文档在该时长内视为新鲜，可直接复用。
    """

    shard_threshold: int = 1000
    yield_every: int = 500
    page_size: int = 10
    shard_batch_size: int = 50
    window_days: int = 30
    max_age_hours: float = 0.0

    @classmethod
    def from_env(cls, prefix: str = "ECONOMICS_") -> "EngineConfig":
        """从环境变量加载引擎参数。"""
        return cls(
            shard_threshold=int(os.getenv(f"{prefix}SHARD_THRESHOLD", 1000)),
            yield_every=int(os.getenv(f"{prefix}YIELD_EVERY", 500)),
            page_size=int(os.getenv(f"{prefix}PAGE_SIZE", 10)),
            shard_batch_size=int(os.getenv(f"{prefix}SHARD_BATCH_SIZE", 50)),
            window_days=int(os.getenv(f"{prefix}WINDOW_DAYS", 30)),
            max_age_hours=float(os.getenv(f"{prefix}MAX_AGE_HOURS", 0)),
        )


@dataclass
class StorageConfig:
    """
    描述经济指标文档的持久化设置。

    属性:
        db_path (str): SQLite 文件路径，默认位于项目根目录。
    """

    db_path: str = "economics_dashboard.sqlite3"

    @classmethod
    def from_env(cls, prefix: str = "STORAGE_") -> "StorageConfig":
        return cls(db_path=os.getenv(f"{prefix}DB_PATH", "economics_dashboard.sqlite3"))


@dataclass
class CacheConfig:
    """
    广告花费聚合结果的缓存设置。

    属性:
        enabled (bool): 是否启用缓存。
        ttl_seconds (int): 缓存条目存活时间。
    """

    enabled: bool = True
    ttl_seconds: int = 600

    @classmethod
    def from_env(cls, prefix: str = "CACHE_") -> "CacheConfig":
        enabled_raw = os.getenv(f"{prefix}ENABLED", "1").lower()
        return cls(
            enabled=enabled_raw in {"1", "true", "yes"},
            ttl_seconds=int(os.getenv(f"{prefix}TTL_SECONDS", 600)),
        )


@dataclass
class AppConfig:
    """
    顶层组合配置，聚合凭证、引擎、存储、缓存与 LLM 设置。

    属性:
        amazon (AmazonCredentialConfig): Amazon 接入凭证。
        engine (EngineConfig): 聚合与分页参数。
        storage (StorageConfig): 持久化相关设置。
        cache (CacheConfig): 缓存设置。
        openai_api_key (Optional[str]): OpenAI API Key。
        openai_model (str): 默认模型名称。
        openai_temperature (float): 生成温度。
    """

    amazon: AmazonCredentialConfig
    engine: EngineConfig = field(default_factory=EngineConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-5-mini"
    openai_temperature: float = 0.0

    @classmethod
    def from_env(cls) -> "AppConfig":
        """
        功能说明:
            统一从环境变量载入所有子配置。
        返回:
            AppConfig: 完整的应用配置实例。
        """
        return cls(
            amazon=AmazonCredentialConfig.from_env(),
            engine=EngineConfig.from_env(),
            storage=StorageConfig.from_env(),
            cache=CacheConfig.from_env(),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-5-mini"),
            openai_temperature=float(os.getenv("OPENAI_TEMPERATURE", "0")),
        )
