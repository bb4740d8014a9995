#!/usr/bin/env python3
"""
Main entry point for the mesh router when running locally.
This file allows running the router directly from the project root.
"""

import sys
from pathlib import Path

# Add the src directory to Python path
src_dir = Path(__file__).parent / "src"
sys.path.insert(0, str(src_dir))


def main():
    """Run the mesh router."""
    from mesh_router.main import main as run_router

    print("Starting mesh router locally...")
    print("Data plane: http://localhost:8080 (routed by Host header)")
    print("Admin health: http://localhost:8080/_router/health")
    print("API docs: http://localhost:8080/_router/docs")

    run_router()


if __name__ == "__main__":
    main()
