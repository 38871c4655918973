"""Application configuration for the locale synchronizer."""
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

import yaml
from dotenv import load_dotenv
from openai import AsyncOpenAI

from locale_sync.logging_config import setup_logger
from locale_sync.translator_client import OpenAITranslatorClient


@dataclass
class AppConfig:
    """Everything a synchronization run needs, including the translator client."""
    # Paths
    locales_root: str
    reference_locale: str

    # Batching and retries
    chunk_size: int = 20
    max_retries: int = 3
    retry_base_delay: float = 1.0
    full_translation: bool = False

    # Model configuration
    model_name: str = 'gpt-4o-mini'
    max_model_tokens: int = 4000
    request_timeout: Optional[float] = 120.0

    # Concurrency
    max_concurrent_api_calls: int = 4
    requests_per_minute: int = 60

    # Processing settings
    dry_run: bool = False
    show_progress: bool = True

    # Language code -> display name, used to make prompts explicit
    language_codes: Dict[str, str] = field(default_factory=dict)

    # Object exposing ``async invoke(prompt, target_locale)``; None only in dry-run mode
    translator_client: Optional[Any] = None

    def __post_init__(self):
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be at least 1, got {self.chunk_size}.")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}.")
        if self.max_concurrent_api_calls < 1:
            raise ValueError(
                f"max_concurrent_api_calls must be at least 1, got {self.max_concurrent_api_calls}."
            )
        if self.requests_per_minute < 1:
            raise ValueError(f"requests_per_minute must be at least 1, got {self.requests_per_minute}.")

    def language_name(self, locale: str) -> str:
        return self.language_codes.get(locale, locale)


def _compute_project_root() -> str:
    """Compute the project root directory."""
    script_real_path = os.path.realpath(__file__)
    script_dir = os.path.dirname(script_real_path)
    return os.path.abspath(os.path.join(script_dir, os.pardir))


def _load_dotenv_files(project_root: str) -> Optional[str]:
    """Load the first .env found (project root, then docker/). Returns its path, if any."""
    for candidate in (os.path.join(project_root, '.env'), os.path.join(project_root, 'docker', '.env')):
        if os.path.exists(candidate):
            load_dotenv(candidate)
            return candidate
    return None


def _load_yaml_config(project_root: str) -> Dict[str, Any]:
    """Read the YAML settings file. Any problem is reported on stderr and yields ``{}``."""
    config_file = os.path.abspath(
        os.environ.get('TRANSLATOR_CONFIG_FILE', os.path.join(project_root, 'config.yaml'))
    )
    if not os.path.exists(config_file):
        print(f"Warning: no configuration file at '{config_file}', using defaults.", file=sys.stderr)
        return {}

    try:
        with open(config_file, 'r', encoding='utf-8') as config_file_stream:
            loaded_config = yaml.safe_load(config_file_stream)
    except (yaml.YAMLError, OSError) as e:
        print(f"Error: could not load '{config_file}': {e}. Using defaults.", file=sys.stderr)
        return {}

    if loaded_config is None:
        return {}
    if not isinstance(loaded_config, dict):
        print(f"Error: '{config_file}' must hold a YAML mapping. Using defaults.", file=sys.stderr)
        return {}
    return loaded_config


def _setup_logger_from_config(config: Dict[str, Any]) -> logging.Logger:
    """Set up logger based on configuration."""
    log_config = config.get('logging', {})
    log_level_str = log_config.get('log_level', 'INFO').upper()
    log_file_path = log_config.get('log_file_path', 'logs/locale_sync.log')
    log_to_console = log_config.get('log_to_console', True)
    return setup_logger(log_level_str, log_file_path, log_to_console)


def _build_language_codes(locales_list: List[Dict[str, str]]) -> Dict[str, str]:
    """Build the code -> name mapping from supported locales."""
    language_codes: Dict[str, str] = {}
    for locale in locales_list:
        code = locale.get('code')
        name = locale.get('name')
        if code and name:
            language_codes[code] = name
    return language_codes


def _resolve_locales_root(project_root: str, locales_root: str) -> str:
    if os.path.isabs(locales_root):
        return locales_root
    return os.path.abspath(os.path.join(project_root, locales_root))


def _create_translator_client(
        dry_run: bool,
        model_name: str,
        max_model_tokens: int,
        request_timeout: Optional[float],
        logger: logging.Logger
) -> Optional[OpenAITranslatorClient]:
    """Create the OpenAI-backed translator unless running dry."""
    if dry_run:
        logger.info("Running in dry-run mode, OpenAI client will not be initialized")
        return None

    api_key_from_env = os.environ.get('OPENAI_API_KEY')
    if not api_key_from_env:
        logger.critical("CRITICAL: OPENAI_API_KEY environment variable not found.")
        logger.critical("Please set OPENAI_API_KEY or enable dry_run mode in configuration.")
        sys.exit(1)

    if not api_key_from_env.startswith('sk-'):
        logger.warning("Warning: OPENAI_API_KEY does not start with 'sk-'. This may be invalid.")

    try:
        client = AsyncOpenAI(api_key=api_key_from_env)
    except Exception as e:
        logger.critical("Failed to initialize OpenAI client: %s", str(e))
        sys.exit(1)

    logger.info("OpenAI client initialized successfully")
    return OpenAITranslatorClient(
        client=client,
        model_name=model_name,
        max_model_tokens=max_model_tokens,
        request_timeout=request_timeout
    )


def load_app_config() -> AppConfig:
    """
    Load application configuration from YAML file and environment variables.

    Environment variables win over the YAML file for the settings that are
    commonly changed per invocation (locales root, reference locale, model,
    chunk size and retry ceiling).

    Returns:
        AppConfig: The loaded application configuration.
    """
    project_root = _compute_project_root()

    dotenv_path = _load_dotenv_files(project_root)
    config = _load_yaml_config(project_root)
    logger = _setup_logger_from_config(config)
    if dotenv_path:
        logger.info("Loaded environment variables from: %s", dotenv_path)
    else:
        logger.debug("No .env file found under %s; using the process environment.", project_root)

    language_codes = _build_language_codes(config.get('supported_locales', []))

    dry_run = config.get('dry_run', False)
    model_name = os.environ.get('MODEL_NAME', config.get('model_name', 'gpt-4o-mini'))
    max_model_tokens = config.get('max_model_tokens', 4000)
    request_timeout = config.get('request_timeout', 120.0)

    locales_root = _resolve_locales_root(
        project_root,
        os.environ.get('LOCALES_ROOT', config.get('locales_root', 'locales'))
    )
    reference_locale = os.environ.get('REFERENCE_LOCALE', config.get('reference_locale', 'pt-BR'))
    chunk_size = int(os.environ.get('TRANSLATION_CHUNK_SIZE', config.get('chunk_size', 20)))
    max_retries = int(os.environ.get('TRANSLATION_MAX_RETRIES', config.get('max_retries', 3)))

    translator_client = _create_translator_client(
        dry_run, model_name, max_model_tokens, request_timeout, logger
    )

    return AppConfig(
        locales_root=locales_root,
        reference_locale=reference_locale,
        chunk_size=chunk_size,
        max_retries=max_retries,
        retry_base_delay=float(config.get('retry_base_delay', 1.0)),
        full_translation=config.get('full_translation', False),
        model_name=model_name,
        max_model_tokens=max_model_tokens,
        request_timeout=request_timeout,
        max_concurrent_api_calls=config.get('max_concurrent_api_calls', 4),
        requests_per_minute=config.get('requests_per_minute', 60),
        dry_run=dry_run,
        show_progress=config.get('show_progress', True),
        language_codes=language_codes,
        translator_client=translator_client
    )
