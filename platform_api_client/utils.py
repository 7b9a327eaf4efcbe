import json
import os
import shutil
from datetime import datetime
from typing import Any, Union


def read_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_json(obj: Any, path: str) -> None:
    ensure_base_dir(path)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=4)


def copy_file(in_path: str, out_path: str) -> None:
    ensure_base_dir(out_path)
    shutil.copyfile(in_path, out_path)


def ensure_base_dir(path: str) -> None:
    """Creates the parent directory of the given path, if necessary"""
    base_dir = os.path.dirname(os.fspath(path))
    if base_dir:
        os.makedirs(base_dir, exist_ok=True)


def parse_date(date_or_str: Union[datetime, str]) -> str:
    if isinstance(date_or_str, datetime):
        return date_or_str.isoformat()
    return str(date_or_str)
