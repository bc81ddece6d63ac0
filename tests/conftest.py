import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from fakes import RecordingLogger, make_credential_store


@pytest.fixture
def logger():
	return RecordingLogger()


@pytest.fixture
def credential_store(logger):
	store, _ = make_credential_store(logger)
	return store
