"""
YAML-based message template management for patient and operator texts
"""
import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional
import logging

logger = logging.getLogger("prompt-manager")


class PromptManager:
    """
    Manages external message templates with YAML loading and caching.

    A template file holds either a single `template` string or a `templates`
    mapping of named variants, selected with the `variant` argument.
    """

    def __init__(self, prompts_dir: str = "../prompts"):
        # Get the directory relative to this file's location
        current_dir = Path(__file__).parent
        self.prompts_dir = current_dir / prompts_dir
        self._prompts_cache: Dict[str, Dict[str, Any]] = {}

    def _load_file(self, prompt_name: str) -> Dict[str, Any]:
        if prompt_name not in self._prompts_cache:
            prompt_file = self.prompts_dir / f"{prompt_name}.yaml"

            if not prompt_file.exists():
                logger.warning(f"Prompt file not found: {prompt_file}")
                raise FileNotFoundError(f"Prompt file {prompt_file} does not exist.")

            with open(prompt_file, 'r', encoding='utf-8') as f:
                self._prompts_cache[prompt_name] = yaml.safe_load(f) or {}
            logger.info(f"Loaded prompt template: {prompt_name}")

        return self._prompts_cache[prompt_name]

    def has_prompt(self, prompt_name: str, variant: Optional[str] = None) -> bool:
        try:
            prompt_data = self._load_file(prompt_name)
        except FileNotFoundError:
            return False
        if variant is None:
            return 'template' in prompt_data
        return variant in prompt_data.get('templates', {})

    def load_prompt(self, prompt_name: str, variant: Optional[str] = None, **kwargs) -> str:
        """Load and format a template (or one named variant of it)"""
        prompt_data = self._load_file(prompt_name)

        if variant is None:
            template = prompt_data.get('template', '')
        else:
            variants = prompt_data.get('templates', {})
            if variant not in variants:
                raise KeyError(f"Unknown variant '{variant}' in prompt {prompt_name}")
            template = variants[variant]

        try:
            return template.format(**kwargs)
        except KeyError as e:
            logger.error(f"Missing template variable in {prompt_name}/{variant}: {e}")
            raise ValueError(f"Missing template variable: {e}")

    def list_variants(self, prompt_name: str) -> List[str]:
        return sorted(self._load_file(prompt_name).get('templates', {}))

    def reload_prompts(self):
        """Reload all cached prompts (useful for development)"""
        self._prompts_cache.clear()
        logger.info("Prompt cache cleared - prompts will be reloaded")

    def get_prompt_info(self, prompt_name: str) -> Dict[str, Any]:
        """Get prompt metadata (description, version, variants)"""
        try:
            prompt_data = self._load_file(prompt_name)
        except FileNotFoundError as e:
            return {"error": str(e)}
        except yaml.YAMLError as e:
            return {"error": f"Failed to read prompt metadata: {e}"}

        return {
            "description": prompt_data.get("description", "No description available"),
            "version": prompt_data.get("version", "Unknown"),
            "file": str(self.prompts_dir / f"{prompt_name}.yaml"),
            "variants": sorted(prompt_data.get("templates", {})),
        }


# Global prompt manager instance
prompt_manager = PromptManager()
