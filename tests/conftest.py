"""Test conftest for setting up the test environment."""

import os

# Set required environment variables before importing any app modules
# so Settings() can be built during collection
os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SYNC_SCHEDULER_ENABLED", "false")
