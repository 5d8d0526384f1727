import docker

from .config import settings

_client: docker.DockerClient | None = None


def get_docker_client() -> docker.DockerClient:
    # Connect to the Docker socket on first use
    global _client
    if _client is None:
        _client = docker.DockerClient(base_url=settings.docker_base_url)
    return _client
