"""Test configuration and fixtures"""
import os
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "true"
os.environ["ENCRYPTION_KEY"] = "test-master-secret-for-testing-only-0123456789"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["LOG_FORMAT"] = "console"
os.environ["IP_RATE_LIMIT_ENABLED"] = "false"
