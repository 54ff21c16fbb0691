"""refold I/O module for JSON/YAML artifacts."""

from refold.io.artifacts import (
    histogram_from_dict,
    histogram_to_dict,
    make_measured_file,
    make_response_file,
    make_unfold_result,
    read_artifact,
    read_config,
    read_measured_file,
    read_response_file,
    response_from_dict,
    write_artifact,
    write_measured_file,
    write_response_file,
    write_unfold_result,
)

__all__ = [
    "histogram_from_dict",
    "histogram_to_dict",
    "make_measured_file",
    "make_response_file",
    "make_unfold_result",
    "read_artifact",
    "read_config",
    "read_measured_file",
    "read_response_file",
    "response_from_dict",
    "write_artifact",
    "write_measured_file",
    "write_response_file",
    "write_unfold_result",
]
