from pathlib import Path
from typing import Final

PATH: Final[Path] = Path(__file__).parent.parent / "resources"
DEFAULTS: Final[Path] = PATH / "defaults.toml"
