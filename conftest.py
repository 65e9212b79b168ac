"""Pytest fixtures shared by the matcher tests"""
import pytest

from nccmatch import synthetic
from nccmatch.matcher import Matcher

PATTERN_SIZE = 64


@pytest.fixture(scope="session")
def pattern():
    """Smooth 64x64 texture used as the reference template"""
    return synthetic.textured_pattern(PATTERN_SIZE, PATTERN_SIZE, seed=3)


@pytest.fixture(scope="function")
def learned(pattern):
    """Matcher with ``pattern`` learned at depth 2"""
    m = Matcher()
    m.learn(pattern, pyramid_depth=2)
    return m
