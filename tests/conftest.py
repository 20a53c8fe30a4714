from __future__ import annotations

import pytest

from scalesift import SiftDetector, SiftParams

import synthetic


@pytest.fixture(scope="session")
def params():
    return SiftParams()


@pytest.fixture(scope="session")
def flat_img():
    return synthetic.flat_image()


@pytest.fixture(scope="session")
def step_edge_img():
    return synthetic.step_edge_image()


@pytest.fixture(scope="session")
def blob_img():
    return synthetic.blob_image()


@pytest.fixture(scope="session")
def textured_img():
    return synthetic.textured_image()


@pytest.fixture(scope="session")
def textured_descriptors(textured_img):
    """Descriptors of the textured image, computed once per session."""
    return SiftDetector().detect(textured_img)
