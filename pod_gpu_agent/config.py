"""
Configuration for the Pod GPU Agent
Reads from environment variables with sensible defaults
"""
import os
from pathlib import Path

# Metrics endpoint
EXPORTER_PORT = int(os.getenv('EXPORTER_PORT', '8000'))
EXPORTER_ADDRESS = os.getenv('EXPORTER_ADDRESS', '0.0.0.0')

# Refresh cadence
REFRESH_INTERVAL = float(os.getenv('REFRESH_INTERVAL', '30'))  # seconds

# Timeouts for external calls (seconds)
CLUSTER_API_TIMEOUT = float(os.getenv('CLUSTER_API_TIMEOUT', '10'))
ENUMERATION_TIMEOUT = float(os.getenv('ENUMERATION_TIMEOUT', '10'))
DEVICE_QUERY_TIMEOUT = float(os.getenv('DEVICE_QUERY_TIMEOUT', '5'))

# Parallel container enumeration
ENUMERATION_WORKERS = int(os.getenv('ENUMERATION_WORKERS', '8'))

# Process enumeration: "kubectl", "cgroup" or "none"
PROCESS_ENUMERATOR = os.getenv('PROCESS_ENUMERATOR', 'kubectl').lower().strip()
KUBECTL_PATH = os.getenv('KUBECTL_PATH', 'kubectl')

# Host /proc is usually mounted at /host/proc inside a DaemonSet pod
PROC_ROOT = Path(os.getenv(
    'PROC_ROOT',
    '/host/proc' if os.path.exists('/host/proc') else '/proc',
))

# Restrict the pod listing to one node (empty = cluster-wide)
NODE_NAME = os.getenv('NODE_NAME', '')

# Logging
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
