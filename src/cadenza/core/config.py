"""Application configuration using pydantic-settings with grouped env prefixes."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings


class LedgerConfig(BaseSettings):
    """The orchestrator's own identity on the ledger."""

    model_config = {"env_prefix": "CADENZA_LEDGER_"}

    plan_id: str = ""  # orchestrator's own plan; defines our settlement token


class AgentsConfig(BaseSettings):
    """Remote generation agents and the plans that pay for them."""

    model_config = {"env_prefix": "CADENZA_AGENTS_"}

    song_generator_id: str = ""
    song_generator_plan_id: str = ""
    script_generator_id: str = ""
    script_generator_plan_id: str = ""
    video_generator_id: str = ""
    video_generator_plan_id: str = ""


class ChainConfig(BaseSettings):
    """EVM chain access for swaps, transfers and credit event scans."""

    model_config = {"env_prefix": "CADENZA_CHAIN_"}

    rpc_url: str = "http://localhost:8545"
    private_key: str = ""
    network_id: int = 42161
    router_address: str = "0x4752ba5DBc23f44D87826276BF6Fd6b1C372aD24"
    factory_address: str = "0xf1D7CC64Fb4452F05c498126312eBE29f30Fbcf9"
    mint_operator: str = "0xd596661b11Ba7EaCA074fA59247e342214Db4D5A"
    burn_operator: str = "0x5838B5512cF9f12FE9f2beccB20eb47211F9B0bc"
    slippage_bps: int = 100  # 1%
    swap_deadline_seconds: int = 1200


class PipelineConfig(BaseSettings):
    """Retry budgets and fan-out policy for the stage handlers."""

    model_config = {"env_prefix": "CADENZA_PIPELINE_"}

    max_retries: int = 2
    image_failure_threshold: int = 0
    video_failure_threshold: int = 3
    video_credit_cost: int = 5
    fanout_concurrency: int | None = None  # None = unbounded
    work_dir: str = "/tmp"


class NarrationConfig(BaseSettings):
    """Language-model rephrasing of user-facing status messages."""

    model_config = {"env_prefix": "CADENZA_NARRATION_"}

    enabled: bool = False
    openai_api_key: str = ""
    model: str = "gpt-4.1-mini"
    temperature: float = 0.6
    max_tokens: int = 1024


class RedisConfig(BaseSettings):
    """Redis backing for per-task conversation history."""

    model_config = {"env_prefix": "CADENZA_REDIS_"}

    enabled: bool = False
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    history_ttl: int = 86400  # 24 hours


class S3Config(BaseSettings):
    """S3 storage for compiled videos."""

    model_config = {"env_prefix": "CADENZA_S3_"}

    bucket: str = "cadenza-videos"
    region: str = "us-east-1"
    endpoint_url: str | None = None  # LocalStack override
    public_base_url: str | None = None  # CDN / gateway in front of the bucket


class ServerConfig(BaseSettings):
    """HTTP server exposing health checks and the narration event stream."""

    model_config = {"env_prefix": "CADENZA_SERVER_"}

    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: list[str] = ["*"]  # JSON list in the env var


class AppSettings(BaseSettings):
    """Root application settings aggregating all sub-configs."""

    model_config = {"env_prefix": "CADENZA_"}

    environment: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    ledger: LedgerConfig = LedgerConfig()
    agents: AgentsConfig = AgentsConfig()
    chain: ChainConfig = ChainConfig()
    pipeline: PipelineConfig = PipelineConfig()
    narration: NarrationConfig = NarrationConfig()
    redis: RedisConfig = RedisConfig()
    s3: S3Config = S3Config()
    server: ServerConfig = ServerConfig()
