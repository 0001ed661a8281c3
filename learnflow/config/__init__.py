import os
import json
import logging
from pathlib import Path
from typing import Any, List

from dotenv import load_dotenv

from .logging_config import setup_app_logging

# Load environment variables from .env file
load_dotenv()

CONFIG_DIR = Path(__file__).parent
PROMPTS_DIR = CONFIG_DIR / 'prompts'
PROJECT_ROOT = CONFIG_DIR.parent.parent

# Load configuration from config.json
config_path = Path(os.getenv('LEARNFLOW_CONFIG_PATH', str(CONFIG_DIR / 'config.json')))
with open(config_path, 'r', encoding='utf-8') as f:
    CONFIG = json.load(f)

CONFIG['project_root'] = str(PROJECT_ROOT)

# --- Prompt Loading ---
# Every analyzer and the gap pipeline read their templates from CONFIG['prompts'][<name>]
PROMPT_FILES = {
    'concept': 'concept_system_prompt.txt',
    'general': 'general_system_prompt.txt',
    'quiz_grading': 'quiz_grading_prompt.txt',
    'code_gaps': 'code_gap_prompt.txt',
    'concept_rewrite': 'concept_rewrite_prompt.txt',
    'context_summary': 'context_summary_prompt.txt',
    'gap_category': 'gap_category_prompt.txt',
    'gap_recommendation': 'gap_recommendation_prompt.txt',
    'clarification': 'clarification_response.txt',
}

CONFIG['prompts'] = {}
for prompt_name, filename in PROMPT_FILES.items():
    prompt_path = PROMPTS_DIR / filename
    try:
        with open(prompt_path, 'r', encoding='utf-8') as f:
            CONFIG['prompts'][prompt_name] = f.read().strip()
    except FileNotFoundError:
        raise FileNotFoundError(
            f"Prompt template not found: {prompt_path}\n"
            f"Please ensure {filename} exists in the config/prompts directory."
        )


def validate_config() -> None:
    """Validate that all required configuration sections are present and within range.

    API keys are not checked here; the LLM provider layer validates them when a client is
    built, so the service can start (and tests can run) with the mock collaborators only.
    """
    required_sections = ['llm', 'router', 'context', 'modes', 'gaps', 'sessions', 'progress']
    for section in required_sections:
        if section not in CONFIG:
            raise ValueError(f"Missing configuration section: {section}")

    required_models = ['tutor', 'utility']
    for model in required_models:
        if model not in CONFIG['llm'].get('models', {}):
            raise ValueError(f"Missing configuration for LLM model: {model}")

    capacity = CONFIG['context'].get('window_capacity')
    if not isinstance(capacity, int) or not 5 <= capacity <= 10:
        raise ValueError(f"context.window_capacity must be an integer between 5 and 10, got {capacity!r}")

    threshold = CONFIG['router'].get('confidence_threshold')
    if not isinstance(threshold, (int, float)) or not 0.0 < threshold <= 1.0:
        raise ValueError(f"router.confidence_threshold must be in (0, 1], got {threshold!r}")

    if CONFIG['modes'].get('default') not in ('exam', 'concept', 'build'):
        raise ValueError(f"modes.default must be one of exam/concept/build, got {CONFIG['modes'].get('default')!r}")


validate_config()


# --- Helper function to get config value from CONFIG or environment variable ---
def get_config_value(json_keys: List[str], env_var_name: str, default_value: Any = None) -> Any:
    """
    Retrieves a configuration value.
    Priority:
    1. Environment variable (if env_var_name is provided and variable is set).
    2. Value from CONFIG dictionary (using json_keys).
    3. default_value.
    """
    if env_var_name:
        env_value = os.getenv(env_var_name)
        if env_value is not None:
            # Attempt to match type of default_value
            if isinstance(default_value, bool):
                if env_value.lower() == 'true':
                    return True
                if env_value.lower() == 'false':
                    return False
            elif isinstance(default_value, int):
                try:
                    return int(env_value)
                except ValueError:
                    pass  # Fall through to JSON or default if not a valid int
            elif isinstance(default_value, float):
                try:
                    return float(env_value)
                except ValueError:
                    pass
            return env_value

    current_level = CONFIG
    try:
        for key in json_keys:
            current_level = current_level[key]
        if isinstance(current_level, (str, int, bool, float, list, dict)):
            return current_level
    except (KeyError, TypeError):
        pass

    return default_value


# --- Environment overrides for the settings operators tune most often ---
CONFIG['router']['text_deadline_s'] = get_config_value(['router', 'text_deadline_s'], 'LEARNFLOW_TEXT_DEADLINE_S', 10.0)
CONFIG['router']['visual_deadline_s'] = get_config_value(['router', 'visual_deadline_s'], 'LEARNFLOW_VISUAL_DEADLINE_S', 30.0)
CONFIG['llm']['provider'] = get_config_value(['llm', 'provider'], 'LLM_PROVIDER', 'nebius')

# --- Logging Configuration ---
CONFIG['logging'] = {
    'level': get_config_value(['logging', 'level'], 'LOG_LEVEL', 'INFO'),
    'file_path': get_config_value(['logging', 'file_path'], 'LOG_FILE_PATH', 'logs/learnflow.log'),
    'max_bytes': get_config_value(['logging', 'max_bytes'], 'LOG_MAX_BYTES', 5 * 1024 * 1024),  # 5MB
    'backup_count': get_config_value(['logging', 'backup_count'], 'LOG_BACKUP_COUNT', 3),
    'date_format': get_config_value(['logging', 'date_format'], 'LOG_DATE_FORMAT', '%Y-%m-%d %H:%M:%S'),
}

setup_app_logging(config=CONFIG.get('logging'))

config_init_logger = logging.getLogger(__name__)
config_init_logger.info("[config_init] Configuration loaded from %s", config_path)
