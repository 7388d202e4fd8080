"""YAML message templates loaded by shared.prompt_manager"""
