"""
应用配置模块

使用 Pydantic Settings 管理所有环境变量和配置。
配置从项目根目录的 .env 文件读取，支持类型验证和默认值。

配置分组：
- 数据库（PostgreSQL）
- Redis（outbox 队列和分布式锁）
- Firestore（交互式模板的用户记录存储）
- Outbox 投递策略（重试次数、退避、租约）
- 订单金额策略（税率）
"""
import warnings  # 用于发出警告
from decimal import Decimal
from typing import Literal

from pydantic import (
    HttpUrl,  # HTTP URL 类型验证
    PostgresDsn,  # PostgreSQL 连接字符串验证
    computed_field,  # 计算字段装饰器
    model_validator,  # 模型验证器装饰器
)
from pydantic_settings import BaseSettings, SettingsConfigDict  # 配置管理
from typing_extensions import Self  # 用于类型注解中引用自身类型


class Settings(BaseSettings):
    """
    应用配置类

    继承自 BaseSettings，自动从环境变量和 .env 文件读取配置。

    配置来源优先级：
    1. 环境变量（最高优先级）
    2. .env 文件
    3. 代码中的默认值（最低优先级）
    """
    model_config = SettingsConfigDict(
        # 使用项目根目录的 .env 文件（backend/ 目录的上一级）
        env_file="../.env",
        env_ignore_empty=True,  # 忽略空的环境变量
        extra="ignore",  # 忽略未定义的额外字段
    )
    PROJECT_NAME: str = "Edu Templates Marketplace"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    SENTRY_DSN: HttpUrl | None = None

    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "marketplace"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> PostgresDsn:
        return PostgresDsn.build(
            scheme="postgresql+psycopg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_SERVER,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )

    # Redis 配置（outbox stream + 分布式锁）
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None

    # Firestore 配置
    FIRESTORE_PROJECT_ID: str = "edu-templates"
    FIRESTORE_DATABASE: str = "(default)"
    FIRESTORE_COLLECTION: str = "user_records"  # 用户记录集合
    FIRESTORE_ACCESS_TOKEN: str | None = None  # OAuth2 access token（服务账号签发）
    FIRESTORE_EMULATOR_HOST: str | None = None  # 本地模拟器，如 "localhost:8080"
    FIRESTORE_TIMEOUT_SECONDS: float = 15.0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def firestore_base_url(self) -> str:
        """
        Firestore REST API 基础地址

        配置了模拟器时走 http 模拟器地址，否则走 Google 官方地址。
        """
        if self.FIRESTORE_EMULATOR_HOST:
            return f"http://{self.FIRESTORE_EMULATOR_HOST}/v1"
        return "https://firestore.googleapis.com/v1"

    # 订单金额策略
    TAX_RATE: Decimal = Decimal("0")  # 税率，0.15 表示 15%

    # Outbox 投递配置
    OUTBOX_MAX_ATTEMPTS: int = 5  # 最大尝试次数，超过后标记为 failed
    OUTBOX_BATCH_LIMIT: int = 100  # 每轮最多入队的事件数
    OUTBOX_ENQUEUE_INTERVAL_SECONDS: int = 30  # 入队任务间隔
    OUTBOX_REAP_INTERVAL_SECONDS: int = 60  # 回收卡死事件的任务间隔
    OUTBOX_LEASE_SECONDS: int = 5 * 60  # 单个事件处理租约（秒）
    OUTBOX_RETRY_BASE_SECONDS: int = 60  # 退避基数：base * 2^attempts

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        """
        检查敏感配置是否使用了默认值

        本地环境只警告，其他环境直接报错。

        Args:
            var_name: 配置项名称
            value: 配置项的值

        Raises:
            ValueError: 在非本地环境使用默认值时
        """
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        self._check_default_secret("FIRESTORE_ACCESS_TOKEN", self.FIRESTORE_ACCESS_TOKEN)
        return self


# 创建全局配置实例，整个应用共享
settings = Settings()  # type: ignore
