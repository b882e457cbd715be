"""
ContentLink Patch Management System
Copyright (C) 2026 The ContentLink Authors

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
ContentLink keeps a third-party content package linked into a host
application's configuration: it downloads and verifies the package, patches
the two control files the host reads as one reversible unit, and watches the
host for updates that invalidate the patch.
"""

from .config import ContentLinkConfig, load_config
from .index import ContentLinkService, main, setup_global_update_logging
from .modules.patcher.index import PatchOutcome, PatchResult
from .modules.status.index import RecommendedAction, StatusKind, StatusResult

__version__ = "1.0.0"

__all__ = [
    'ContentLinkConfig',
    'load_config',
    'ContentLinkService',
    'main',
    'setup_global_update_logging',
    'PatchOutcome',
    'PatchResult',
    'RecommendedAction',
    'StatusKind',
    'StatusResult'
]
