import sys

from dbt_client.main import main

sys.exit(main())
