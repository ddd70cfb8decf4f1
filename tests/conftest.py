"""
Shared fixtures: sample objects written to tmp_path and linked.
"""
import pytest

from elfbuilder import sample_builder
from pipeline import link_sample

from pyprx.elf import read_image


@pytest.fixture
def sample_path(tmp_path):
    return sample_builder().write(tmp_path / "hello.o")


@pytest.fixture
def sample_image(sample_path):
    return read_image(str(sample_path))


@pytest.fixture
def sample_module(sample_path):
    return link_sample(sample_path)
