"""Loading of packaged and user-supplied Kubernetes manifests."""
from pathlib import Path
from string import Template
from typing import Any, Dict, List, Optional, Union

import yaml

from k3sctl.errors import ConfigurationError

MANIFEST_DIR = Path(__file__).resolve().parent.parent / "manifests"


def load_manifests(
    source: Union[str, Path],
    values: Optional[Dict[str, Any]] = None,
) -> List[Dict[str, Any]]:
    """Read a multi-document YAML file, substituting ``${name}`` placeholders.

    Bare names are looked up in the packaged manifest directory.
    """
    path = Path(source).expanduser()
    if not path.is_absolute() and not path.exists():
        path = MANIFEST_DIR / path
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigurationError(f"Cannot read manifest {path}: {e}") from e
    if values:
        try:
            text = Template(text).substitute({k: str(v) for k, v in values.items()})
        except (KeyError, ValueError) as e:
            raise ConfigurationError(f"Unresolved placeholder in {path}: {e}") from e
    try:
        return [doc for doc in yaml.safe_load_all(text) if doc]
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
