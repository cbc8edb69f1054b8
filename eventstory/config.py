"""
LLM Configuration

Default model settings and loading of user overrides from YAML. The
configuration is a plain dictionary, passed explicitly to the Extractor.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

DEFAULT_LLM_CONFIG: Dict[str, Any] = {
    'provider': "Ollama",
    'model': "mistral:instruct",
    'ollama_url': "http://localhost:11434",
    'api_key': "",
    'temperature': 0.3,
    'max_tokens': 4096,
    'concurrent_requests': 5,
}

PROVIDERS = ("Google Gemini", "Ollama")


def load_llm_config(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Merge a YAML override file onto the defaults.

    The Gemini API key falls back to the GOOGLE_API_KEY environment variable
    so it does not have to live in the config file.
    """
    config = dict(DEFAULT_LLM_CONFIG)
    if path:
        with open(path, 'r', encoding='utf-8') as f:
            overrides = yaml.safe_load(f) or {}
        if not isinstance(overrides, dict):
            raise ValueError(f"LLM config must be a mapping, got {type(overrides).__name__}")
        config.update(overrides)

    if not config.get('api_key'):
        config['api_key'] = os.environ.get("GOOGLE_API_KEY", "")

    if config['provider'] not in PROVIDERS:
        raise ValueError(f"Unknown LLM provider '{config['provider']}'. Expected one of: {', '.join(PROVIDERS)}")
    return config
