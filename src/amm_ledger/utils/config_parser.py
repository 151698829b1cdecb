import json
import os
from decimal import Decimal, InvalidOperation
from typing import Union

import yaml

REQUIRED_SECTIONS = ("tokens", "pools")


def load_config(path: str) -> dict:
    """
    Load a market configuration file (YAML or JSON) and validate its layout.

    Parameters
    ----------
    path : str
        The path to the configuration file.

    Returns
    -------
    dict
        Parsed configuration data as a Python dictionary.

    Raises
    ------
    FileNotFoundError
        If the file does not exist at the given path.

    ValueError
        - If the file extension is unsupported.
        - If the file content is not a dictionary.
        - If a required section is missing or malformed.
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Config file not found: {path}")

    _, ext = os.path.splitext(path.lower())

    if ext in (".yaml", ".yml"):
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    elif ext == ".json":
        with open(path, "r") as f:
            data = json.load(f)
    else:
        raise ValueError("Unsupported config extension. Use .yaml, .yml, or .json.")

    if not isinstance(data, dict):
        raise ValueError("Config file root must be a dictionary.")
    validate_config(data)
    return data


def validate_config(config: dict) -> None:
    """Check that token and pool sections exist and pools only reference declared tokens."""
    for section in REQUIRED_SECTIONS:
        if not isinstance(config.get(section), list):
            raise ValueError(f"Config section '{section}' must be a list.")

    addresses = set()
    for token_cfg in config["tokens"]:
        if "address" not in token_cfg:
            raise ValueError("Every token needs an 'address'.")
        addresses.add(token_cfg["address"])

    for pool_cfg in config["pools"]:
        for side in ("token_a", "token_b"):
            if pool_cfg.get(side) not in addresses:
                raise ValueError(f"Pool references undeclared token {pool_cfg.get(side)!r}.")
        if pool_cfg["token_a"] == pool_cfg["token_b"]:
            raise ValueError(f"Pool pairs {pool_cfg['token_a']!r} with itself.")


def to_base_units(amount: Union[int, float, str], decimals: int = 18) -> int:
    """
    Convert a human-readable token amount into integer base units.

    ``to_base_units("1.5", 18) == 1_500_000_000_000_000_000``. Strings are
    parsed exactly, so YAML values such as ``"1e3"`` keep full precision.
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValueError(f"Not a numeric amount: {amount!r}") from None
    if value < 0:
        raise ValueError(f"Amounts cannot be negative: {amount!r}")
    return int(value.scaleb(decimals))
