"""
Configuration management
"""

import copy
import logging
from pathlib import Path
from typing import Dict, Any, Optional

import yaml

logger = logging.getLogger(__name__)

TERABYTE = 1024 ** 4
GIGABYTE = 1024 ** 3


def _deep_merge(base: Dict, update: Dict) -> Dict:
    """Recursively merge update into base (in place) and return base"""
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


class Config:
    """
    Unified configuration manager

    Loads configuration from YAML files (if available) on top of the
    built-in defaults and provides dotted-key access
    """

    config_files = ['warehouse.yaml']

    def __init__(self, config_dir: Optional[str] = "config",
                 overrides: Optional[Dict[str, Any]] = None):
        """
        Initialize configuration

        Args:
            config_dir: Directory containing config files (None for defaults only)
            overrides: Values merged last, e.g. from tests or command line flags
        """
        self.config_dir = Path(config_dir) if config_dir else None
        self._config = self._get_default_config()
        self._load_configs()
        if overrides:
            _deep_merge(self._config, copy.deepcopy(overrides))

    def _load_configs(self):
        """Load all configuration files"""
        if self.config_dir is None:
            return

        for filename in self.config_files:
            filepath = self.config_dir / filename
            if not filepath.exists():
                continue
            with open(filepath, 'r') as f:
                config_data = yaml.safe_load(f)
            if config_data:
                _deep_merge(self._config, config_data)
                logger.info("Loaded configuration from %s", filepath)

    def _get_default_config(self) -> Dict:
        """Get default configuration"""
        return {
            'database': {
                'name': 'SQLPool01',
                'result_set_caching': False,
            },
            'distribution': {
                'distributions': 60,
                'compute_nodes': 1,
            },
            'storage': {
                'page_size_bytes': 8192,
                'columnstore': {
                    'max_rowgroup_rows': 1048576,
                    'bulk_load_threshold': 102400,
                },
                'min_rows_per_cell': 1000000,
            },
            'execution': {
                'broadcast_row_threshold': 100000,
                'engine_threads': 1,
            },
            'cache': {
                'capacity_bytes': TERABYTE,
                'max_result_bytes': 10 * GIGABYTE,
                'max_idle_seconds': 48 * 3600,
                'age_weight': 0.25,
                'high_watermark': 0.9,
                'low_watermark': 0.8,
                'maintenance_interval_seconds': 60,
            },
            'workload_management': {
                'default_group': 'smallrc',
                'request_history': 10000,
                'system_groups': [
                    {'name': 'smallrc', 'request_min_resource_grant_percent': 3},
                    {'name': 'mediumrc', 'request_min_resource_grant_percent': 10},
                    {'name': 'largerc', 'request_min_resource_grant_percent': 22},
                    {'name': 'xlargerc', 'request_min_resource_grant_percent': 70},
                ],
            },
            'server': {
                'host': '0.0.0.0',
                'port': 8080,
            },
            'logging': {
                'level': 'INFO',
            },
        }

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value

        Args:
            key: Configuration key (supports nested keys like 'cache.capacity_bytes')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split('.')
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def get_all(self) -> Dict:
        """Get all configuration"""
        return copy.deepcopy(self._config)
