"""Configuration validation tooling for vaultpilot.

Usage:
    python -m tools.config_check                 # validate config/app.yaml and config/policy.yaml
    python -m tools.config_check --config-dir deploy/config
    python -m tools.config_check --env           # also load the full config with environment secrets
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Iterable, List, Optional

from pydantic import BaseModel, ValidationError

from core.config import CONFIG_FILES, load_config, load_yaml
from core.exceptions import ConfigurationError
from infra.session_crypto import KEY_HEX_LENGTH


def validate_file(path: Path, model: type[BaseModel]) -> List[str]:
    try:
        data = load_yaml(path)
        model.model_validate(data)
    except FileNotFoundError:
        return [f"✖ {path}: file not found"]
    except (TypeError, ValidationError) as exc:
        if isinstance(exc, ValidationError):
            details = [f"  - {err['loc']}: {err['msg']}" for err in exc.errors()]
            return [f"✖ {path} invalid"] + details
        return [f"✖ {path}: {exc}"]
    else:
        return [f"✓ {path} valid"]


def validate_environment(config_dir: str) -> List[str]:
    """Load the merged configuration, secrets included."""
    try:
        config = load_config(config_dir)
    except ConfigurationError as exc:
        return [f"✖ environment: {exc}"]

    key = config.encryption_key.get_secret_value() if config.encryption_key else ""
    if len(key) != KEY_HEX_LENGTH:
        return [f"✖ environment: sealing key must be {KEY_HEX_LENGTH} hex characters"]
    return [f"✓ environment valid (mode={config.app.mode}, store={config.store.backend})"]


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Validate vaultpilot configuration files")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--env", action="store_true", help="Also validate environment secrets")
    args = parser.parse_args(list(argv) if argv is not None else None)

    exit_code = 0
    messages: List[str] = []
    for filename, model in CONFIG_FILES.items():
        file_messages = validate_file(Path(args.config_dir) / filename, model)
        messages.extend(file_messages)
        if file_messages[0].startswith("✖"):
            exit_code = 1

    if args.env:
        env_messages = validate_environment(args.config_dir)
        messages.extend(env_messages)
        if env_messages[0].startswith("✖"):
            exit_code = 1

    for line in messages:
        print(line)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
