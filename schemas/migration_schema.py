from pydantic import BaseModel, Field
from typing import Dict
from enum import Enum


class MigrationState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class EntityMigrationCount(BaseModel):
    """Per entity type tally of one migration run."""
    found: int = 0
    migrated: int = 0
    skipped: int = 0
    images_rehomed: int = 0


class MigrationReport(BaseModel):
    user_id: str
    already_completed: bool = False
    entities: Dict[str, EntityMigrationCount] = Field(default_factory=dict)

    def count_for(self, entity_type: str) -> EntityMigrationCount:
        if entity_type not in self.entities:
            self.entities[entity_type] = EntityMigrationCount()
        return self.entities[entity_type]

    @property
    def total_migrated(self) -> int:
        return sum(count.migrated for count in self.entities.values())


class MigrationStatus(BaseModel):
    state: MigrationState
    migration_key: str
