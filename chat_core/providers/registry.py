"""Provider 与候选模型配置。

网关按 candidates 的顺序依次尝试：排在前面的模型质量最高，
后面的模型更便宜、更快，仅在前一个模型被限流时才会用到。

候选列表可通过 settings.model_candidates 覆盖，这里只提供默认值与
每个模型的生成参数。"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping


@dataclass
class ModelConfig:
    """单个候选模型的配置。"""

    name: str
    max_output_tokens: int
    default_temperature: float


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]
    candidates: List[str] = field(default_factory=list)

    def model(self, name: str) -> ModelConfig:
        cfg = self.models.get(name)
        if cfg is None:
            # 未登记的模型使用通用参数，便于通过配置直接换模型
            return ModelConfig(name=name, max_output_tokens=8192, default_temperature=0.7)
        return cfg


GEMINI_CONFIG = ProviderConfig(
    name="gemini",
    base_url="https://generativelanguage.googleapis.com/v1beta",
    models={
        "gemini-2.5-pro": ModelConfig(
            name="gemini-2.5-pro",
            max_output_tokens=8192,
            default_temperature=0.7,
        ),
        "gemini-2.5-flash": ModelConfig(
            name="gemini-2.5-flash",
            max_output_tokens=8192,
            default_temperature=0.7,
        ),
        "gemini-2.5-flash-lite": ModelConfig(
            name="gemini-2.5-flash-lite",
            max_output_tokens=8192,
            default_temperature=0.7,
        ),
    },
    candidates=["gemini-2.5-pro", "gemini-2.5-flash", "gemini-2.5-flash-lite"],
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "gemini": GEMINI_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
