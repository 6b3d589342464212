"""
Budget routes (JSON)

- GET /api/v1/projects/<project_id>/budget/summary   estimated / committed / available
"""

from flask import Blueprint, jsonify
from flask_login import login_required

from ...bidding import budget_summary
from ...models import Role
from ...security import roles_required

budget_bp = Blueprint("budget", __name__, url_prefix="/api/v1/projects")


@budget_bp.route("/<int:project_id>/budget/summary", methods=["GET"])
@login_required
@roles_required(Role.ADMIN, Role.STAFF, Role.VIEWER)
def summary(project_id: int):
    return jsonify(budget_summary(project_id))
