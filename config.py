import json
import math
import logging
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List

import torch


class ConfigError(ValueError):
    """Raised when the training configuration is missing or malformed."""


def default_device() -> str:
    return "cuda" if torch.cuda.is_available() else "cpu"


@dataclass
class ELMoConfig:
    # Data parameters
    corpus_file: str
    output_dir: str
    token_vocab_size: int = 300_000
    char_vocab_size: int = 128
    min_count: int = 3
    max_len_token: int = 50
    char_start: str = "$"
    char_end: str = "^"
    char_pad: str = " "
    char_unk: str = "~"
    str_unk: str = "UNK"

    # Model parameters
    char_embedding_dim: int = 15
    out_channels: List[int] = field(default_factory=lambda: [25, 50, 75, 100, 125, 150])
    kernel_size: List[int] = field(default_factory=lambda: [1, 2, 3, 4, 5, 6])
    highways: int = 1
    in_dim: int = 512
    hidden_dim: int = 4096
    n_lstm_layers: int = 2
    dropout: float = 0.1

    # Training parameters
    batch_size: int = 1
    max_iter: int = 10
    learning_rate: float = 0.001
    max_grad_norm: float = 5.0
    seed: int = 0

    # Device configuration
    device: str = field(default_factory=default_device)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ELMoConfig":
        """
        Build a config from a parsed JSON object.

        ``corpus_file`` and ``output_dir`` are required, every other field
        falls back to its default. Unknown keys are ignored with a warning.
        """
        if not isinstance(data, dict):
            raise ConfigError("configuration must be a JSON object")

        known = {f.name for f in fields(cls)}
        for key in sorted(set(data) - known):
            logging.warning(f"ignoring unknown configuration field '{key}'")

        params = {
            "corpus_file": _required_str(data, "corpus_file"),
            "output_dir": _required_str(data, "output_dir"),
        }

        for name in ("token_vocab_size", "min_count", "max_len_token", "batch_size",
                     "char_embedding_dim", "highways", "in_dim", "hidden_dim",
                     "n_lstm_layers", "max_iter"):
            if name in data:
                params[name] = _positive_int(data, name)

        if "char_vocab_size" in data:
            params["char_vocab_size"] = _positive_int(data, "char_vocab_size", minimum=5)
        if "seed" in data:
            params["seed"] = _positive_int(data, "seed", minimum=0)

        for name in ("learning_rate", "max_grad_norm"):
            if name in data:
                value = _float(data, name)
                if value <= 0:
                    raise ConfigError(f"{name} must be positive, got {value}")
                params[name] = value

        if "dropout" in data:
            dropout = _float(data, "dropout")
            if not 0.0 <= dropout < 1.0:
                raise ConfigError(f"dropout must be in [0, 1), got {dropout}")
            params["dropout"] = dropout

        for name in ("out_channels", "kernel_size"):
            if name in data:
                params[name] = _positive_int_list(data, name)

        for name in ("char_start", "char_end", "char_pad", "char_unk"):
            if name in data:
                params[name] = _single_char(data, name)

        if "str_unk" in data:
            params["str_unk"] = _required_str(data, "str_unk")

        if "device" in data:
            device = _required_str(data, "device")
            try:
                torch.device(device)
            except RuntimeError as e:
                raise ConfigError(f"invalid device '{device}': {e}") from e
            params["device"] = device

        config = cls(**params)
        config.validate()
        return config

    def validate(self) -> None:
        """Cross-field checks that a single field cannot express."""
        if len(self.out_channels) != len(self.kernel_size):
            raise ConfigError(
                f"out_channels and kernel_size must have the same length, "
                f"got {len(self.out_channels)} and {len(self.kernel_size)}"
            )
        if not self.kernel_size:
            raise ConfigError("at least one convolution filter is required")
        if max(self.kernel_size) > self.max_len_token:
            raise ConfigError(
                f"kernel_size {max(self.kernel_size)} is wider than max_len_token {self.max_len_token}"
            )
        specials = [self.char_pad, self.char_start, self.char_end, self.char_unk]
        if len(set(specials)) != len(specials):
            raise ConfigError("char_pad, char_start, char_end and char_unk must be distinct")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def torch_device(self) -> torch.device:
        return torch.device(self.device)


def load_config(json_path: str) -> ELMoConfig:
    """
    Read and validate a JSON configuration file.

    Args:
        json_path: path to the JSON file

    Returns:
        validated ELMoConfig
    """
    with open(json_path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"cannot parse {json_path}: {e}") from e
    return ELMoConfig.from_dict(data)


def _required_str(data: Dict[str, Any], name: str) -> str:
    if name not in data:
        raise ConfigError(f"{name} was not supplied in the configuration")
    value = data[name]
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{name} must be a non-empty string")
    return value


def _single_char(data: Dict[str, Any], name: str) -> str:
    value = data[name]
    if not isinstance(value, str) or len(value) != 1:
        raise ConfigError(f"{name} must be a single character")
    return value


def _positive_int(data: Dict[str, Any], name: str, minimum: int = 1) -> int:
    value = data[name]
    # bool is a subclass of int
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer")
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float(data: Dict[str, Any], name: str) -> float:
    value = data[name]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{name} must be a number")
    if not math.isfinite(value):
        raise ConfigError(f"{name} must be finite, got {value}")
    return float(value)


def _positive_int_list(data: Dict[str, Any], name: str) -> List[int]:
    values = data[name]
    if not isinstance(values, list) or not values:
        raise ConfigError(f"{name} must be a non-empty list of integers")
    result = []
    for value in values:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ConfigError(f"{name} must contain positive integers only")
        result.append(value)
    return result
