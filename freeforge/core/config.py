"""
Configuration management for FreeForge
"""

import os
import yaml
from pathlib import Path
from typing import Dict, List, Optional
from dataclasses import dataclass, field, asdict


# Maximum number of numbered OPENROUTER_API_KEY_<n> variables scanned from the environment
MAX_NUMBERED_KEYS = 10


@dataclass
class APIConfig:
    """Configuration for the upstream completion API"""
    base_url: str = "https://openrouter.ai/api/v1/chat/completions"
    api_keys: List[str] = field(default_factory=list)
    # Sent as HTTP-Referer / X-Title so the provider can attribute traffic
    site_url: str = "http://localhost:3000"
    site_name: str = "FreeForge"
    disable_proxy: bool = False

    # Model rosters, in priority order
    fast_models: List[str] = field(default_factory=lambda: [
        "stepfun/step-3.5-flash:free",
        "deepseek/deepseek-r1-0528:free",
        "arcee-ai/trinity-large-preview:free",
    ])
    code_models: List[str] = field(default_factory=lambda: [
        "arcee-ai/trinity-large-preview:free",
        "stepfun/step-3.5-flash:free",
        "deepseek/deepseek-r1-0528:free",
    ])


@dataclass
class HealthConfig:
    """Credential and model health thresholds"""
    exhaust_threshold: int = 3
    credential_cooldown: float = 120.0
    model_fail_threshold: int = 2
    model_cooldown: float = 120.0


@dataclass
class TransportConfig:
    """Timeouts for a single completion attempt (seconds)"""
    request_timeout: float = 60.0       # non-streaming ceiling when the caller gives none
    stream_timeout: float = 90.0        # absolute ceiling for one streaming attempt
    first_chunk_timeout: float = 25.0   # no bytes at all within this window aborts the stream
    connect_timeout: float = 10.0
    error_body_limit: int = 300


@dataclass
class FallbackConfig:
    """Combo fallback behaviour"""
    attempt_delay: float = 0.3


@dataclass
class GenerationConfig:
    """Configuration for the phased plan-then-generate pipeline"""

    # Planning phase
    plan_max_retries: int = 3
    plan_retry_delay: float = 2.0
    plan_max_tokens: int = 2048
    plan_timeout: float = 45.0
    plan_temperature: float = 0.3
    max_plan_files: int = 15

    # Per-file phase
    file_max_retries: int = 3
    file_retry_base_delay: float = 2.0
    file_delay: float = 1.0
    min_file_length: int = 20
    file_max_tokens: int = 4096
    file_timeout: float = 60.0
    file_temperature: float = 0.2

    # Legacy monolithic path
    legacy_max_tokens: int = 16384

    # Files every plan must contain
    entry_file: str = "/App.js"
    stylesheet_file: str = "/index.css"


@dataclass
class StreamConfig:
    """Server-side event stream settings"""
    ping_interval: float = 15.0
    max_pipeline_attempts: int = 3
    pipeline_retry_delay: float = 3.0


@dataclass
class ClientConfig:
    """Client Retry Supervisor settings"""
    endpoint: str = "http://localhost:8080/api/gen-ai-code"
    max_retries: int = 3
    backoff_delays: List[float] = field(default_factory=lambda: [2.0, 5.0, 10.0])
    inactivity_timeout: float = 90.0
    total_timeout: float = 300.0


@dataclass
class ServerConfig:
    """HTTP surface settings"""
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class LoggingConfig:
    """Logging settings"""
    level: str = "INFO"
    log_file: Optional[str] = None


@dataclass
class Config:
    """Main configuration class"""
    api: APIConfig = field(default_factory=APIConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    client: ClientConfig = field(default_factory=ClientConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, config_path: str = None) -> 'Config':
        """Load configuration from YAML file, then apply environment overrides.

        An explicit path must exist. Without one, ``config.yaml`` in the
        working directory is used when present, otherwise the defaults.
        """
        yaml_data: Dict = {}
        if config_path is None:
            default_path = Path("config.yaml")
            if default_path.exists():
                with open(default_path, 'r') as f:
                    yaml_data = yaml.safe_load(f) or {}
        else:
            config_path = Path(config_path)
            if not config_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {config_path}")
            with open(config_path, 'r') as f:
                yaml_data = yaml.safe_load(f) or {}

        api_config = dict(yaml_data.get('api') or {})
        logging_config = dict(yaml_data.get('logging') or {})

        env_keys = collect_api_keys()
        if env_keys:
            api_config['api_keys'] = env_keys

        if os.getenv('OPENROUTER_BASE_URL'):
            api_config['base_url'] = os.getenv('OPENROUTER_BASE_URL')
        if os.getenv('FREEFORGE_SITE_URL'):
            api_config['site_url'] = os.getenv('FREEFORGE_SITE_URL')

        disable_proxy_env = os.getenv('FREEFORGE_DISABLE_PROXY')
        if disable_proxy_env is not None:
            api_config['disable_proxy'] = disable_proxy_env.lower() in {'1', 'true', 'yes', 'on'}

        if os.getenv('FREEFORGE_LOG_LEVEL'):
            logging_config['level'] = os.getenv('FREEFORGE_LOG_LEVEL')

        return cls(
            api=APIConfig(**api_config),
            health=HealthConfig(**(yaml_data.get('health') or {})),
            transport=TransportConfig(**(yaml_data.get('transport') or {})),
            fallback=FallbackConfig(**(yaml_data.get('fallback') or {})),
            generation=GenerationConfig(**(yaml_data.get('generation') or {})),
            stream=StreamConfig(**(yaml_data.get('stream') or {})),
            client=ClientConfig(**(yaml_data.get('client') or {})),
            server=ServerConfig(**(yaml_data.get('server') or {})),
            logging=LoggingConfig(**logging_config),
        )

    def save_to_file(self, path: str):
        """Write the configuration to YAML, leaving credentials out"""
        data = asdict(self)
        data['api']['api_keys'] = []
        with open(path, 'w') as f:
            yaml.safe_dump(data, f, sort_keys=False)

    def summary(self):
        """Return a human-readable summary of the configuration"""
        return {
            'endpoint': self.api.base_url,
            'credentials': f"{len(self.api.api_keys)} API key(s) loaded",
            'fast_models': ', '.join(self.api.fast_models),
            'code_models': ', '.join(self.api.code_models),
            'health': f"exhausted after {self.health.exhaust_threshold} failures, cooldown {self.health.credential_cooldown:.0f}s",
            'timeouts': f"stream {self.transport.stream_timeout:.0f}s, first chunk {self.transport.first_chunk_timeout:.0f}s, request {self.transport.request_timeout:.0f}s",
            'retries': f"plan {self.generation.plan_max_retries}, file {self.generation.file_max_retries}, pipeline {self.stream.max_pipeline_attempts}, client {self.client.max_retries}",
            'server': f"{self.server.host}:{self.server.port}",
        }

    def validate(self):
        """Validate configuration and return list of errors"""
        errors = []

        # 1. API Configuration
        if not self.api.api_keys:
            errors.append("At least one API key must be provided (set OPENROUTER_API_KEY)")
        if not self.api.fast_models:
            errors.append("api.fast_models must list at least one model")
        if not self.api.code_models:
            errors.append("api.code_models must list at least one model")

        # 2. Health thresholds
        if self.health.exhaust_threshold < 1 or self.health.model_fail_threshold < 1:
            errors.append("Health failure thresholds must be at least 1")
        if self.health.credential_cooldown < 0 or self.health.model_cooldown < 0:
            errors.append("Cooldown intervals must not be negative")

        # 3. Timeouts
        timeouts = [
            self.transport.request_timeout,
            self.transport.stream_timeout,
            self.transport.first_chunk_timeout,
            self.generation.plan_timeout,
            self.generation.file_timeout,
            self.client.inactivity_timeout,
            self.client.total_timeout,
        ]
        if any(t <= 0 for t in timeouts):
            errors.append("Timeout values must be positive")
        if self.transport.first_chunk_timeout >= self.transport.stream_timeout:
            errors.append("transport.first_chunk_timeout must be shorter than transport.stream_timeout")

        # 4. Delays and retry bounds
        delays = [
            self.fallback.attempt_delay,
            self.generation.plan_retry_delay,
            self.generation.file_retry_base_delay,
            self.generation.file_delay,
            self.stream.pipeline_retry_delay,
        ] + list(self.client.backoff_delays)
        if any(d < 0 for d in delays):
            errors.append("Delay values must not be negative")

        bounds = [
            self.generation.plan_max_retries,
            self.generation.file_max_retries,
            self.stream.max_pipeline_attempts,
            self.client.max_retries,
        ]
        if any(b < 1 for b in bounds):
            errors.append("Retry bounds must be at least 1")

        if self.stream.ping_interval <= 0:
            errors.append("stream.ping_interval must be positive")

        # 5. Plan invariants
        if self.generation.max_plan_files < 2:
            errors.append("generation.max_plan_files must leave room for the entry file and stylesheet")
        if self.generation.entry_file == self.generation.stylesheet_file:
            errors.append("generation.entry_file and generation.stylesheet_file must differ")

        return errors


def collect_api_keys() -> List[str]:
    """Collect the credential pool from OPENROUTER_API_KEY and OPENROUTER_API_KEY_2..10"""
    keys = []
    primary = os.getenv('OPENROUTER_API_KEY')
    if primary and primary.strip():
        keys.append(primary.strip())
    for i in range(2, MAX_NUMBERED_KEYS + 1):
        value = os.getenv(f'OPENROUTER_API_KEY_{i}')
        if value and value.strip():
            keys.append(value.strip())
    return keys
