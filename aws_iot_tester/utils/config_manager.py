"""
Configuration manager for the AWS IoT test client.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


class ConfigManager:
    """Manages the test client configuration: broker, credentials and topics."""

    DEFAULT_MESSAGE = "Hello from test client"

    def __init__(self, config_dir: Path):
        """Initialize the configuration manager."""
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / 'config.json'
        self.config = self._defaults()
        self._load()

    def _defaults(self) -> Dict[str, Any]:
        return {
            'endpoint': None,
            'cert_path': None,
            'key_path': None,
            'ca_path': None,
            'client_id': None,
            'sub_topics': [],
            'pub_topic': None,
            'message': self.DEFAULT_MESSAGE,
            'log_packets': True,
        }

    def _load(self):
        """Load configuration from file."""
        if self.config_file.exists():
            try:
                loaded_config = json.loads(self.config_file.read_text())
                if isinstance(loaded_config, dict):
                    self.config.update(loaded_config)
            except json.JSONDecodeError:
                logger.warning(f"Ignoring unreadable configuration file {self.config_file}")

        # Ensure required keys exist
        if not isinstance(self.config.get('sub_topics'), list):
            self.config['sub_topics'] = []

    def _save(self):
        """Save configuration to file."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file.write_text(json.dumps(self.config, indent=2))

    def get(self, key: str, default: Any = None) -> Any:
        value = self.config.get(key)
        return default if value is None else value

    def update(self, **values):
        """Store every value that is not None and save once."""
        changed = False
        for key, value in values.items():
            if value is None:
                continue
            if key in ('cert_path', 'key_path', 'ca_path'):
                value = str(Path(value).expanduser().resolve())
            if self.config.get(key) != value:
                self.config[key] = value
                changed = True
        if changed:
            self._save()

    def get_sub_topics(self) -> List[str]:
        """Get the subscription topics."""
        return list(self.config.get('sub_topics', []))
