import json

import pytest
from platform_api_client.errors import RemoteDataPathError
from platform_api_client.models import (
    JobComputeMode,
    JobRequest,
    RemoteDataPath,
    WaitConfig,
)
from pydantic import ValidationError


def test_wait_config_defaults():
    config = WaitConfig()

    assert config.poll_interval == 5.0
    assert config.max_wait == 600.0


@pytest.mark.parametrize("poll_interval, max_wait", [(0, 10), (2, 1), (1, -1)])
def test_wait_config_validation(poll_interval, max_wait):
    with pytest.raises(ValidationError):
        WaitConfig(poll_interval=poll_interval, max_wait=max_wait)


def test_remote_data_path():
    path = RemoteDataPath.from_data_id("data-1")

    assert path.to_dict() == {"data-id": "data-1"}
    assert RemoteDataPath.from_dict({"data-id": "data-1"}) == path
    assert RemoteDataPath.is_remote_path_dict({"data-id": "data-1"})
    assert not RemoteDataPath.is_remote_path_dict({"threshold": 0.5})
    assert not RemoteDataPath.is_remote_path_dict(0.5)


def test_invalid_remote_data_path():
    with pytest.raises(RemoteDataPathError):
        RemoteDataPath.from_dict({"data_id": "wrong-key"})


def test_job_request_serialization():
    job_request = JobRequest(analytic="vehicle-sense", version="1.0")
    job_request.set_input("video", RemoteDataPath.from_data_id("data-1"))
    job_request.set_data_parameter("mask", RemoteDataPath.from_data_id("data-2"))
    job_request.set_parameter("fps", 5)

    assert job_request.to_dict() == {
        "analytic": "vehicle-sense",
        "version": "1.0",
        "inputs": {"video": {"data-id": "data-1"}},
        "parameters": {"mask": {"data-id": "data-2"}, "fps": 5},
    }


def test_job_request_from_dict_splits_data_parameters():
    job_request = JobRequest.from_dict(
        {
            "analytic": "a",
            "compute_mode": "BEST",
            "inputs": {"video": {"data-id": "data-1"}},
            "parameters": {"mask": {"data-id": "data-2"}, "labels": {"car": 1}},
        }
    )

    assert job_request.compute_mode is JobComputeMode.BEST
    assert job_request.parameters["mask"] == RemoteDataPath(data_id="data-2")
    assert job_request.parameters["labels"] == {"car": 1}
    assert job_request.to_dict()["compute_mode"] == "BEST"


def test_job_request_json_file(tmp_path):
    job_request = JobRequest(analytic="a")
    job_request.set_input("video", RemoteDataPath.from_data_id("data-1"))
    path = tmp_path / "requests" / "job.json"

    job_request.to_json(str(path))

    assert json.loads(path.read_text())["inputs"] == {"video": {"data-id": "data-1"}}
    assert JobRequest.from_json(str(path)) == job_request
    assert JobRequest.from_str(job_request.to_str()) == job_request


def test_job_request_with_invalid_input():
    with pytest.raises(RemoteDataPathError):
        JobRequest.from_dict({"analytic": "a", "inputs": {"video": {"path": "/tmp/x"}}})
