"""配置加载模块 - 从环境变量和 .env 文件加载配置。"""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hl_toolkit.risk.config import RiskConfig


class RunMode(str, Enum):
    """运行模式枚举。"""

    PAPER = "paper"  # 纸交易
    LIVE = "live"  # 实盘


class Network(str, Enum):
    """Hyperliquid 网络。"""

    MAINNET = "mainnet"
    TESTNET = "testnet"


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 运行模式 ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="运行模式: paper 或 live")
    network: Network = Field(default=Network.TESTNET, description="mainnet 或 testnet")

    # ==================== Hyperliquid API ====================
    hl_private_key: str = Field(default="", description="签名私钥（API wallet）")
    hl_account_address: str = Field(
        default="",
        description="主账户地址；为空时由私钥推导",
    )
    hl_timeout: float = Field(default=10.0, gt=0, description="HTTP 超时（秒）")

    # ==================== 执行参数 ====================
    default_slippage_pct: float = Field(
        default=1.0,
        gt=0.0,
        le=10.0,
        description="市价单默认滑点（百分比）",
    )
    metadata_ttl_seconds: float | None = Field(
        default=None,
        gt=0,
        description="资产元数据缓存有效期（秒）；为空表示进程内永久缓存",
    )

    taker_fee_rate: float = Field(
        default=0.0005,
        ge=0.0,
        lt=0.01,
        description="预估手续费使用的 taker 费率",
    )
    maintenance_margin_rate: float = Field(
        default=0.03,
        ge=0.0,
        lt=1.0,
        description="预估强平价使用的维持保证金率",
    )

    # ==================== 风控参数 ====================
    max_leverage: float = Field(default=10.0, gt=0, le=50, description="最大杠杆")
    max_position_size_usd: float = Field(default=1_000.0, gt=0, description="单笔最大名义价值")
    max_daily_loss: float | None = Field(default=None, gt=0, description="日内最大亏损（USD）")
    max_drawdown_pct: float | None = Field(
        default=None,
        gt=0,
        le=100,
        description="最大浮亏回撤（账户净值百分比）",
    )
    max_open_positions: int | None = Field(default=None, gt=0, description="最大持仓数")
    require_stop_loss: bool = Field(default=False, description="是否强制止损")
    daily_loss_projection_pct: float = Field(
        default=10.0,
        gt=0,
        le=100,
        description="日亏损预警时假设的单笔风险（名义价值百分比）",
    )

    # ==================== 纸交易 ====================
    paper_initial_equity: float = Field(default=10_000.0, gt=0, description="纸交易初始资金")

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    # ==================== 数据存储 ====================
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="交易日志存储目录",
    )

    @field_validator("journal_dir", mode="before")
    @classmethod
    def parse_journal_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def is_paper_mode(self) -> bool:
        """是否为纸交易模式。"""
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        """是否为实盘模式。"""
        return self.mode == RunMode.LIVE

    @property
    def is_testnet(self) -> bool:
        return self.network == Network.TESTNET

    def validate_for_live(self) -> list[str]:
        """验证实盘模式的必要配置，返回缺失项列表。"""
        missing = []
        if not self.hl_private_key:
            missing.append("HL_PRIVATE_KEY")
        return missing

    def risk_config(self) -> RiskConfig:
        """由风控参数构建 RiskConfig。"""
        return RiskConfig(
            max_leverage=self.max_leverage,
            max_position_size_usd=self.max_position_size_usd,
            max_daily_loss=self.max_daily_loss,
            max_drawdown_percent=self.max_drawdown_pct,
            max_open_positions=self.max_open_positions,
            require_stop_loss=self.require_stop_loss,
            daily_loss_projection_pct=self.daily_loss_projection_pct,
        )


# 全局配置实例（延迟初始化）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置。"""
    global _settings
    _settings = Settings()
    return _settings
