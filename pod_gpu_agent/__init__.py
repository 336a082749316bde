"""
Per-pod GPU memory exporter for Kubernetes.

Joins the GPU processes reported by NVML with the processes running in each
pod's containers and exports the attributed memory as Prometheus gauges.
"""

__version__ = "0.2.0"
