"""
DBT language client.

Launches the external DBT analyzer and supervises its connection to the editor.
"""

from dbt_client.local.supervisor import LanguageClientSupervisor

__all__ = ["LanguageClientSupervisor"]
