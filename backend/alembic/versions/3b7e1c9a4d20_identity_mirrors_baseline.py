"""identity_mirrors baseline

Revision ID: 3b7e1c9a4d20
Revises: 
Create Date: 2026-10-19 09:12:41.503118

"""
from typing import Sequence, Union

from alembic import op

from identity_mirror.db_base import Base
import identity_mirror.models  # noqa: F401 - required to register all model metadata


# revision identifiers, used by Alembic.
revision: str = '3b7e1c9a4d20'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    Base.metadata.create_all(bind=op.get_bind())


def downgrade() -> None:
    Base.metadata.drop_all(bind=op.get_bind())
