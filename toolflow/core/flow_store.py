"""Flow lookup for the engine, plus loading flows from YAML or JSON files.

The engine never touches storage itself; it asks a ``FlowStore`` for fully
materialized flows. ``InMemoryFlowStore`` is the store used by the CLI and
tests; hosting applications provide their own.
"""

import json
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

import yaml
from pydantic import ValidationError

from toolflow.core.graph_schema import Flow

logger = logging.getLogger(__name__)

FLOW_FILE_SUFFIXES = (".yaml", ".yml", ".json")


class FlowLoadError(Exception):
    """A flow file could not be read or does not describe a valid flow."""

    pass


@runtime_checkable
class FlowStore(Protocol):
    def get_flow(self, flow_id: str) -> Flow | None: ...

    def list_flows(self) -> list[Flow]: ...


class InMemoryFlowStore:
    """Dict-backed store. Flows are copied in and out so callers cannot mutate it."""

    def __init__(self, flows=()):
        self._flows: dict[str, Flow] = {}
        for flow in flows:
            self.add(flow)

    def add(self, flow: Flow) -> None:
        if flow.id in self._flows:
            logger.warning(f"Replacing flow '{flow.id}' in store")
        self._flows[flow.id] = flow.model_copy(deep=True)

    def remove(self, flow_id: str) -> None:
        self._flows.pop(flow_id, None)

    def get_flow(self, flow_id: str) -> Flow | None:
        flow = self._flows.get(flow_id)
        return flow.model_copy(deep=True) if flow is not None else None

    def list_flows(self) -> list[Flow]:
        return [f.model_copy(deep=True) for f in self._flows.values()]

    def __contains__(self, flow_id: object) -> bool:
        return flow_id in self._flows

    def __len__(self) -> int:
        return len(self._flows)


def _read_flow_data(path: Path) -> dict:
    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except OSError as e:
        raise FlowLoadError(f"Cannot read flow file {path}: {e}")
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise FlowLoadError(f"Invalid syntax in {path}: {e}")

    if not isinstance(data, dict):
        raise FlowLoadError(f"Invalid flow file {path}: expected a mapping at the top level")
    return data


def load_flow_file(path: str | Path) -> Flow:
    """Load a single flow definition from a YAML or JSON file.

    A missing ``id`` defaults to the file stem.
    """
    path = Path(path)
    data = _read_flow_data(path)
    data.setdefault("id", path.stem)
    try:
        return Flow(**data)
    except ValidationError as e:
        raise FlowLoadError(f"Invalid flow definition in {path}:\n{e}")
    except TypeError as e:
        raise FlowLoadError(f"Invalid flow definition in {path}: {e}")


def load_flow_directory(directory: str | Path) -> InMemoryFlowStore:
    """Load every flow file in ``directory`` (non-recursive) into a store."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FlowLoadError(f"Not a directory: {directory}")

    store = InMemoryFlowStore()
    for path in sorted(directory.iterdir()):
        if path.suffix not in FLOW_FILE_SUFFIXES or not path.is_file():
            continue
        flow = load_flow_file(path)
        if flow.id in store:
            raise FlowLoadError(f"Duplicate flow id '{flow.id}' in {path}")
        store.add(flow)
    logger.debug(f"Loaded {len(store)} flows from {directory}")
    return store
