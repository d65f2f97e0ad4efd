"""
服务配置。

来源优先级：构造参数 > 环境变量 > .env > JSON 配置文件 > secrets 目录。
JSON 配置文件默认为工作目录下的 config.json，可通过 CONFIG_FILE 指定其他路径。
模块导入时创建单例 config。
"""

from __future__ import annotations

import json
import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Any, List, Optional

from pydantic import field_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    NoDecode,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

_LIST_SEPARATORS = re.compile(r"[\s,;]+")


def config_file_path() -> Path:
    override = os.environ.get("CONFIG_FILE")
    return Path(override) if override else Path.cwd() / "config.json"


class Config(BaseSettings):
    # cert-manager 签发者引用
    issuer_name: str = "istio-ca"
    issuer_kind: str = "Issuer"
    issuer_group: str = "cert-manager.io"

    # 客户端证书最长有效期，超过时按此值截断
    max_client_certificate_duration: timedelta = timedelta(hours=24)
    # CertificateRequest 所在命名空间
    certificate_namespace: str = "istio-system"
    # 为 True 时签发完成后保留 CertificateRequest
    preserve_certificate_requests: bool = False
    issuance_timeout: timedelta = timedelta(seconds=30)
    issuance_poll_interval: timedelta = timedelta(seconds=2)

    # 根证书：为空时从签发者返回的 CA 中获取
    root_ca_cert_file: Optional[str] = None
    root_ca_configmap_name: str = "istio-ca-root-cert"

    trust_domain: str = "cluster.local"
    token_audiences: Annotated[List[str], NoDecode] = ["istio-ca"]

    serving_host: str = "0.0.0.0"
    serving_port: int = 8443
    readiness_probe_path: str = "/readyz"

    leader_election: bool = True
    leader_election_namespace: str = "istio-system"
    leader_election_id: str = "istio-csr"
    controller_workers: int = 2

    kubeconfig: Optional[str] = None
    kube_context: Optional[str] = None

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("token_audiences", mode="before")
    @classmethod
    def parse_audiences(cls, value: Any) -> Any:
        """环境变量中可以写 JSON 数组，也可以用逗号、分号或空白分隔。"""
        if value is None:
            return []
        if not isinstance(value, str):
            return value
        text = value.strip()
        if text.startswith("["):
            return json.loads(text)
        return [item for item in _LIST_SEPARATORS.split(text) if item]

    @field_validator("max_client_certificate_duration", "issuance_timeout", "issuance_poll_interval")
    @classmethod
    def positive_duration(cls, value: timedelta) -> timedelta:
        if value.total_seconds() <= 0:
            raise ValueError("时长必须为正数")
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # JSON 文件不存在时该来源为空
        json_settings = JsonConfigSettingsSource(settings_cls, json_file=config_file_path())
        return init_settings, env_settings, dotenv_settings, json_settings, file_secret_settings


config = Config()
