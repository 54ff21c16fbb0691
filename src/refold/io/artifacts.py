"""Artifact read/write helpers for refold JSON/YAML bundles."""

from __future__ import annotations

import importlib.util
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np

from refold import __version__
from refold.core.config import UnfoldConfig
from refold.core.errors import ConfigurationError, InvalidArgumentError
from refold.core.histogram import Histogram
from refold.core.response import Response
from refold.unfold._types import ErrorTreatment


def _load_yaml_module():
    if importlib.util.find_spec("yaml") is None:
        return None
    import yaml

    return yaml


def _schema_id(name: str, version: str = "v1") -> str:
    return f"refold.{name}.{version}"


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def _write_text(path: Path, payload: str) -> None:
    path.write_text(payload, encoding="utf-8")


def write_artifact(path: Path, payload: Dict[str, Any]) -> None:
    """Write artifact data as JSON or YAML depending on extension."""
    path = Path(path)
    if path.suffix.lower() in {".yml", ".yaml"}:
        yaml = _load_yaml_module()
        if yaml is None:
            raise ImportError("PyYAML is required to write YAML artifacts.")
        _write_text(path, yaml.safe_dump(payload, sort_keys=False))
    else:
        _write_text(path, json.dumps(payload, indent=2))


def read_artifact(path: Path) -> Dict[str, Any]:
    """Read artifact data from JSON or YAML."""
    path = Path(path)
    if path.suffix.lower() in {".yml", ".yaml"}:
        yaml = _load_yaml_module()
        if yaml is None:
            raise ImportError("PyYAML is required to read YAML artifacts.")
        return yaml.safe_load(_read_text(path))
    return json.loads(_read_text(path))


def _provenance() -> Dict[str, Any]:
    return {
        "created_at": datetime.now(timezone.utc).isoformat(),
        "versions": {"refold": __version__, "numpy": np.__version__},
    }


def _check_schema(payload: Dict[str, Any], name: str) -> None:
    schema = payload.get("schema")
    if schema != _schema_id(name):
        raise InvalidArgumentError(f"expected a {_schema_id(name)} artifact, got {schema!r}")


# ---------------------------------------------------------------------------
# Histograms
# ---------------------------------------------------------------------------
def histogram_to_dict(hist: Histogram) -> Dict[str, Any]:
    return {
        "name": hist.name,
        "title": hist.title,
        "edges": [e.tolist() for e in hist.edges],
        "contents": hist.contents.tolist(),
        "errors": None if hist.errors is None else hist.errors.tolist(),
    }


def histogram_from_dict(data: Dict[str, Any]) -> Histogram:
    """Rebuild a histogram; ``values`` (in-range only) may replace ``contents``."""
    if "contents" in data:
        return Histogram(
            contents=np.asarray(data["contents"], dtype=float),
            edges=tuple(np.asarray(e, dtype=float) for e in data["edges"]),
            errors=None if data.get("errors") is None else np.asarray(data["errors"], dtype=float),
            name=data.get("name", ""),
            title=data.get("title", ""),
        )
    return Histogram.from_values(
        data["values"],
        edges=data.get("edges"),
        errors=data.get("errors"),
        name=data.get("name", ""),
        title=data.get("title", ""),
    )


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------
def make_response_file(response: Response) -> Dict[str, Any]:
    return {
        "schema": _schema_id("response"),
        "response": {
            "name": response.name,
            "title": response.title,
            "overflow": response.use_overflow,
            "density": response.use_density,
            "measured": histogram_to_dict(response.hmeasured),
            "truth": histogram_to_dict(response.htruth),
            "fakes": None if response.hfakes is None else histogram_to_dict(response.hfakes),
            "counts": response.matrix(normalized=False).tolist(),
            "sumw2": response.sumw2().tolist(),
        },
        "provenance": _provenance(),
    }


def response_from_dict(data: Dict[str, Any]) -> Response:
    """Build a response from a ``counts`` block or a normalized ``matrix`` plus truth."""
    truth = histogram_from_dict(data["truth"])
    overflow = bool(data.get("overflow", False))
    density = bool(data.get("density", False))
    measured = histogram_from_dict(data["measured"]) if data.get("measured") else None
    if "counts" in data:
        if measured is None:
            raise InvalidArgumentError("a response with counts needs its measured distribution")
        fakes = histogram_from_dict(data["fakes"]) if data.get("fakes") else None
        return Response(
            measured, truth, data["counts"], fakes,
            overflow=overflow, density=density, sumw2=data.get("sumw2"),
            name=data.get("name", ""), title=data.get("title", ""),
        )
    if "matrix" in data:
        return Response.from_matrix(
            data["matrix"], truth, measured,
            overflow=overflow, density=density,
            name=data.get("name", ""), title=data.get("title", ""),
        )
    raise InvalidArgumentError("response block needs either 'counts' or 'matrix'")


def write_response_file(path: Path, response: Response) -> Dict[str, Any]:
    payload = make_response_file(response)
    write_artifact(path, payload)
    return payload


def read_response_file(path: Path) -> Response:
    payload = read_artifact(path)
    _check_schema(payload, "response")
    return response_from_dict(payload["response"])


# ---------------------------------------------------------------------------
# Measured inputs
# ---------------------------------------------------------------------------
def make_measured_file(measured: Histogram, covariance: Optional[np.ndarray] = None) -> Dict[str, Any]:
    return {
        "schema": _schema_id("measured"),
        "measured": histogram_to_dict(measured),
        "covariance": None if covariance is None else np.asarray(covariance, dtype=float).tolist(),
        "provenance": _provenance(),
    }


def write_measured_file(path: Path, measured: Histogram, covariance: Optional[np.ndarray] = None) -> Dict[str, Any]:
    payload = make_measured_file(measured, covariance)
    write_artifact(path, payload)
    return payload


def read_measured_file(path: Path):
    """Return ``(histogram, covariance or None)``."""
    payload = read_artifact(path)
    _check_schema(payload, "measured")
    cov = payload.get("covariance")
    return histogram_from_dict(payload["measured"]), None if cov is None else np.asarray(cov, dtype=float)


# ---------------------------------------------------------------------------
# Results and configuration
# ---------------------------------------------------------------------------
def make_unfold_result(engine, treatment=ErrorTreatment.DEFAULT, truth=None) -> Dict[str, Any]:
    """Serialize the unfolded result, its errors, covariance and chi-squared."""
    t = engine.resolve_treatment(treatment)
    ok = engine.unfold_with_errors(t)
    payload: Dict[str, Any] = {
        "schema": _schema_id("unfold_result"),
        "algorithm": engine.algorithm.name.lower(),
        "reg_parm": engine.reg_parm,
        "treatment": t.name.lower(),
        "status": engine.cache.status.value,
        "errors_ok": ok,
        "unfolded": engine.vunfold().tolist(),
        "errors": engine.eunfold_v(t).tolist(),
        "covariance": engine.eunfold(t).tolist(),
        "chi2": engine.chi2(truth, t),
    }
    if engine.cache.have_bias:
        payload["bias"] = {"bias": engine.vbias().tolist(), "sigma": engine.ebias().tolist()}
    payload["provenance"] = _provenance()
    return payload


def write_unfold_result(path: Path, engine, treatment=ErrorTreatment.DEFAULT, truth=None) -> Dict[str, Any]:
    payload = make_unfold_result(engine, treatment, truth)
    write_artifact(path, payload)
    return payload


def read_config(path: Path) -> UnfoldConfig:
    """Load an :class:`UnfoldConfig` from a file holding the fields or a ``config`` block."""
    payload = read_artifact(path)
    if not isinstance(payload, dict):
        raise ConfigurationError(f"{path} does not hold a mapping")
    return UnfoldConfig.from_dict(payload.get("config", payload))
