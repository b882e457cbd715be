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
Patcher Module - coordinated signature and gameinfo patching

Key Features:
- Signature file trimmed to the anchor line plus exactly one marker line
- Gameinfo replaced wholesale from the mirror list
- Both files replaced in one transaction with rollback
- Disable path restores the clean gameinfo payload
"""

from .index import (
    PatchEngine,
    PatchOutcome,
    PatchResult,
    PatchState,
    build_signature_content,
    signature_has_marker,
    signature_has_malformed_marker,
    gameinfo_has_marker
)

__all__ = [
    'PatchEngine',
    'PatchOutcome',
    'PatchResult',
    'PatchState',
    'build_signature_content',
    'signature_has_marker',
    'signature_has_malformed_marker',
    'gameinfo_has_marker'
]
