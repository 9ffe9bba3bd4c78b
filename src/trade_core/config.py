"""配置加载模块 - 从环境变量和 .env 文件加载配置。"""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunMode(str, Enum):
    """运行模式枚举。"""

    PAPER = "paper"  # 纸交易
    LIVE = "live"  # 实盘


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class Settings(BaseSettings):
    """决策核心配置。

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
    instrument: str = Field(default="NQ", description="默认交易品种")
    point_value: float = Field(default=20.0, gt=0.0, description="每点价值（美元/合约）")
    initial_equity: float = Field(default=100_000.0, gt=0.0, description="初始账户净值")

    # ==================== 交易所连接 ====================
    venue_connector: str = Field(
        default="",
        description="实盘连接器工厂路径，格式 module:factory",
    )
    connector_timeout_sec: float = Field(default=3.0, gt=0.0, le=60.0, description="连接器调用超时（秒）")
    paper_fill_delay_sec: float = Field(default=0.05, ge=0.0, le=10.0, description="纸交易成交延迟（秒）")
    paper_slippage_bps: float = Field(default=0.0, ge=0.0, le=100.0, description="纸交易滑点（基点）")

    # ==================== 预测服务 ====================
    prediction_endpoints: list[str] = Field(
        default_factory=list,
        description="预测服务 HTTP 地址列表",
    )
    prediction_api_key: str = Field(default="", description="预测服务 API Key")
    prediction_weight: float = Field(default=0.4, gt=0.0, le=1.0, description="HTTP 预测服务聚合权重")
    heuristic_provider_enabled: bool = Field(default=True, description="是否启用内置指标启发式预测")
    provider_timeout_sec: float = Field(default=2.0, gt=0.0, le=30.0, description="单个预测调用超时（秒）")
    optimizer_timeout_sec: float = Field(default=2.0, gt=0.0, le=30.0, description="优化器调用超时（秒）")
    reversal_damping: float = Field(default=0.8, ge=0.0, le=1.0, description="反向信号置信度衰减系数")

    # ==================== 风控参数 ====================
    max_daily_loss: float = Field(default=-1000.0, le=0.0, description="日内最大亏损（负数）")
    max_daily_trades: int = Field(default=10, ge=1, le=500, description="日内最大交易次数")
    max_consecutive_losses: int = Field(default=3, ge=1, le=50, description="连续亏损熔断阈值")
    max_drawdown: float = Field(default=0.20, gt=0.0, le=1.0, description="最大回撤（比例）")
    execution_failure_loss: float = Field(
        default=10.0,
        ge=0.0,
        description="执行失败时记入风控账本的合成亏损",
    )
    session_reset_hour: int = Field(default=0, ge=0, le=23, description="交易日切换小时（UTC）")

    # ==================== 数据质量 ====================
    min_data_quality: float = Field(default=0.8, ge=0.0, le=1.0, description="最低数据质量分")
    max_observation_age_sec: float = Field(default=5.0, gt=0.0, description="行情数据最大延迟（秒）")

    # ==================== 置信度阈值 ====================
    confidence_base: float = Field(default=0.75, ge=0.0, le=1.0, description="初始置信度阈值")
    confidence_min: float = Field(default=0.60, ge=0.0, le=1.0, description="置信度阈值下限")
    confidence_max: float = Field(default=0.90, ge=0.0, le=1.0, description="置信度阈值上限")
    confidence_step: float = Field(default=0.01, gt=0.0, le=0.2, description="每笔交易调整步长")

    # ==================== 交易校验 ====================
    min_expected_profit: float = Field(default=25.0, ge=0.0, description="最低预期利润（美元）")
    min_risk_reward: float = Field(default=1.5, ge=0.0, le=20.0, description="最低盈亏比")
    max_volatility: float = Field(default=0.03, gt=0.0, le=1.0, description="最大波动率（ATR/价格）")
    volatility_warning_ratio: float = Field(default=0.8, gt=0.0, le=1.0, description="波动率预警比例")
    restricted_hours: list[int] = Field(
        default_factory=lambda: [20, 21, 22, 23, 0, 1, 2, 3, 4, 5],
        description="禁止交易的小时列表",
    )
    trading_timezone: str = Field(default="UTC", description="交易时段时区")
    learned_hours_enabled: bool = Field(default=True, description="是否根据历史表现屏蔽小时")

    # ==================== 策略参数 ====================
    stop_atr_multiplier: float = Field(default=1.5, ge=0.5, le=10.0, description="止损 ATR 倍数")
    target_atr_multipliers: list[float] = Field(
        default_factory=lambda: [3.0, 4.5],
        description="止盈目标 ATR 倍数",
    )

    # ==================== 仓位计算 ====================
    kelly_cap: float = Field(default=0.25, gt=0.0, le=1.0, description="Kelly 比例上限")
    risk_per_trade_pct: float = Field(default=2.0, gt=0.0, le=10.0, description="单笔最大风险（净值百分比）")
    max_position_size: int = Field(default=5, ge=1, le=1000, description="单笔最大合约数")
    volatility_target: float = Field(default=0.015, gt=0.0, le=1.0, description="波动率调整目标")
    volatility_multiplier_min: float = Field(default=0.5, gt=0.0, le=1.0, description="波动率乘数下限")
    volatility_multiplier_max: float = Field(default=1.2, ge=1.0, le=3.0, description="波动率乘数上限")

    # ==================== 执行与监控 ====================
    confirmation_timeout_sec: float = Field(default=5.0, gt=0.0, le=120.0, description="成交确认超时（秒）")
    monitor_interval_sec: float = Field(default=5.0, gt=0.0, le=600.0, description="持仓监控间隔（秒）")
    max_stop_move_atr: float = Field(default=0.5, gt=0.0, le=5.0, description="单次止损最大移动（ATR 倍数）")
    min_policy_confidence: float = Field(default=0.6, ge=0.0, le=1.0, description="止损策略最低置信度")
    trailing_atr_multiplier: float = Field(default=1.5, gt=0.0, le=10.0, description="移动止损 ATR 倍数")
    emergency_exit_loss: float = Field(default=100.0, gt=0.0, description="紧急离场浮亏阈值（美元）")

    # ==================== 后台任务 ====================
    reconcile_interval_sec: float = Field(default=30.0, gt=0.0, le=3600.0, description="持仓对账间隔（秒）")
    performance_review_interval_sec: float = Field(
        default=900.0,
        gt=0.0,
        description="绩效回顾间隔（秒）",
    )
    state_snapshot_interval_sec: float = Field(default=300.0, gt=0.0, description="状态快照间隔（秒）")
    session_check_interval_sec: float = Field(default=60.0, gt=0.0, description="交易日切换检查间隔（秒）")

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
        description="事件日志与状态快照存储目录",
    )
    journal_retention_days: int = Field(default=30, ge=1, le=3650, description="事件日志保留天数")

    @field_validator("journal_dir", mode="before")
    @classmethod
    def parse_journal_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    @field_validator("restricted_hours")
    @classmethod
    def check_hours(cls, v: list[int]) -> list[int]:
        """小时必须位于 0-23。"""
        invalid = [hour for hour in v if not 0 <= hour <= 23]
        if invalid:
            raise ValueError(f"invalid_hours: {invalid}")
        return sorted(set(v))

    @model_validator(mode="after")
    def check_confidence_bounds(self) -> "Settings":
        """置信度阈值必须满足 min <= base <= max。"""
        if not self.confidence_min <= self.confidence_base <= self.confidence_max:
            raise ValueError("confidence_bounds_invalid: expected min <= base <= max")
        return self

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def state_file(self) -> Path:
        """状态快照文件路径。"""
        return self.journal_dir / "core_state.json"

    @property
    def is_paper_mode(self) -> bool:
        """是否为纸交易模式。"""
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        """是否为实盘模式。"""
        return self.mode == RunMode.LIVE

    def validate_for_live(self) -> list[str]:
        """验证实盘模式的必要配置，返回缺失项列表。"""
        missing = []
        if not self.venue_connector:
            missing.append("VENUE_CONNECTOR")
        if not self.prediction_endpoints and not self.heuristic_provider_enabled:
            missing.append("PREDICTION_ENDPOINTS")
        return missing


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
