"""
Plan table loader + validator with JSON Schema validation
"""

import json
from pathlib import Path
from typing import Optional

from jsonschema import ValidationError as JsonSchemaValidationError
from jsonschema import validate

from .models import PlanTableModel


class PlanTableLoader:
    """
    Load and validate the plan table JSON against its JSON Schema
    """

    def __init__(self, plans_path: Path, schema_path: Path):
        self.plans_path = plans_path
        self.schema_path = schema_path
        self._table: Optional[PlanTableModel] = None

    def load(self) -> PlanTableModel:
        """
        Load plan JSON and validate against JSON Schema

        Raises:
            FileNotFoundError: plan file not found
            ValueError: JSON Schema or Pydantic validation failed
        """
        with open(self.schema_path, "r", encoding="utf-8") as f:
            schema = json.load(f)

        with open(self.plans_path, "r", encoding="utf-8") as f:
            plans_json = json.load(f)

        try:
            validate(instance=plans_json, schema=schema)
        except JsonSchemaValidationError as e:
            raise ValueError(f"JSON Schema validation failed: {e.message}") from e

        table = PlanTableModel(**plans_json)

        self._table = table
        return table

    def get(self) -> PlanTableModel:
        """Get loaded table (loads on first use)"""
        if self._table is None:
            return self.load()
        return self._table


# Singleton instance
_plan_loader: Optional[PlanTableLoader] = None


def get_plan_loader() -> PlanTableLoader:
    """Get singleton plan table loader instance"""
    global _plan_loader
    if _plan_loader is None:
        fixtures_dir = Path(__file__).parent / "fixtures"
        _plan_loader = PlanTableLoader(
            fixtures_dir / "plans.json",
            fixtures_dir / "plans_schema.json",
        )
    return _plan_loader


def validate_plans_against_schema(plans_json: dict, schema: dict) -> None:
    """
    Validate plan JSON against JSON Schema

    Raises:
        JsonSchemaValidationError: If validation fails
    """
    validate(instance=plans_json, schema=schema)
