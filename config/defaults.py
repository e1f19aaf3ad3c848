"""
Default configuration values for code-link.

Centralized defaults that can be overridden by a project config file,
environment variables or command-line options.
"""

from typing import Any, Dict

PROJECT_CONFIG_FILE = ".code-link.json"

# Global default settings
DEFAULT_SETTINGS = {
    # Filesystem watcher
    "watcher": {
        "read_timeout_s": 5.0,
        "write_timeout_s": 5.0,
        "shutdown_timeout_s": 3.0,
        "observer_join_timeout_s": 5.0,
        "rename_suppression_s": 2.0,
        "delete_marker_ttl_s": 5.0,
        "queue_max_size": 1000,
        "initial_scan": True
    },

    # Transport
    "connection": {
        "host": "127.0.0.1",
        "port": None,  # Derived from the project id
        "send_timeout_s": 5.0,
        "handshake_timeout_s": 10.0,
        "malformed_frame_threshold": 3,
        "pending_delete_timeout_s": 30.0,
        "retry": {
            "max_attempts": 5,
            "initial_delay_s": 0.25,
            "max_delay_s": 5.0,
            "backoff_factor": 2.0
        }
    },

    # Sync policy
    "sync": {
        "dangerously_auto_delete": False,
        "detect_conflicts": True,
        "prefer_remote": False,
        "remote_drift_ms": 2000
    },

    # Logging
    "logging": {
        "level": "INFO",
        "log_to_file": False
    }
}

# Environment variable mappings
ENV_VAR_MAPPING = {
    'CODE_LINK_HOST': 'connection.host',
    'CODE_LINK_PORT': 'connection.port',
    'CODE_LINK_SEND_TIMEOUT': 'connection.send_timeout_s',
    'CODE_LINK_HANDSHAKE_TIMEOUT': 'connection.handshake_timeout_s',
    'CODE_LINK_DELETE_TIMEOUT': 'connection.pending_delete_timeout_s',
    'CODE_LINK_READ_TIMEOUT': 'watcher.read_timeout_s',
    'CODE_LINK_WRITE_TIMEOUT': 'watcher.write_timeout_s',
    'CODE_LINK_AUTO_DELETE': 'dangerously_auto_delete',
    'CODE_LINK_PREFER_REMOTE': 'prefer_remote',
    'CODE_LINK_REMOTE_DRIFT_MS': 'remote_drift_ms',
}


def get_default_sync_config() -> Dict[str, Any]:
    """Get the default per-project sync configuration as nested dicts"""
    return {
        'watcher': dict(DEFAULT_SETTINGS['watcher']),
        'connection': {
            **DEFAULT_SETTINGS['connection'],
            'retry': dict(DEFAULT_SETTINGS['connection']['retry'])
        },
        **DEFAULT_SETTINGS['sync']
    }
