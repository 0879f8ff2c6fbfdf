from __future__ import annotations

import pytest

from services.batch import BatchCoordinator, CoordinatorSettings
from services.ingestion.storage import LocalStorage
from services.pipeline import SplitPipeline
from services.segmentation.models import OutputMode
from tests.fakes import FakeRecognizer, FakeRenderer, FakeSplitter


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(root_dir=str(tmp_path / "store"))


@pytest.fixture
def make_coordinator(storage):
    def _make(script, *, splitter=None, **settings):
        recognizer = FakeRecognizer(script)
        pipeline = SplitPipeline(
            renderer=FakeRenderer(),
            recognizer=recognizer,
            splitter=splitter or FakeSplitter(),
        )
        settings.setdefault("output_mode", OutputMode.BY_DATE)
        coordinator = BatchCoordinator(
            pipeline=pipeline,
            storage=storage,
            settings=CoordinatorSettings(**settings),
        )
        coordinator.fake_recognizer = recognizer
        return coordinator

    return _make
