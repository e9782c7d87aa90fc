from pathlib import Path
from typing import Dict

import pytest

from panmerge.toy_data import make_toy_data


@pytest.fixture()
def toy(tmp_path: Path) -> Dict[str, object]:
    return make_toy_data(outdir=tmp_path / "toy")
