"""Container layer.

  _spec       - Dockerfile and ContainerSpec (what to build and run)
  _container  - Container (build / create / start / stop against a RuntimeTransport)
"""

from orchard.container._container import Container, build_image, safe_name
from orchard.container._spec import ContainerSpec, Dockerfile

__all__ = [
    "Container",
    "ContainerSpec",
    "Dockerfile",
    "build_image",
    "safe_name",
]
