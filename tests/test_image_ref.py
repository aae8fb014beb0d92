"""Tests for image reference parsing."""

import pytest

from image_ref import parse_image_reference


class TestDefaults:
    """Short references fall back to Docker Hub and the library namespace."""

    @pytest.mark.parametrize('image', ['postgres', 'postgres:16.2', 'eclipse-mosquitto:2.0.18'])
    def test_bare_name_is_docker_hub_library(self, image):
        ref = parse_image_reference(image)
        assert ref.registry == 'docker.io'
        assert ref.namespace == 'library'

    def test_single_slash_keeps_namespace(self):
        ref = parse_image_reference('linuxserver/sonarr:4.0')
        assert ref.registry == 'docker.io'
        assert ref.namespace == 'linuxserver'
        assert ref.name == 'sonarr'
        assert ref.tag == '4.0'

    def test_dotted_first_segment_is_not_a_host_with_one_slash(self):
        # Hosts are only inferred from the third-from-last segment
        ref = parse_image_reference('ghcr.io/esphome')
        assert ref.registry == 'docker.io'
        assert ref.namespace == 'ghcr.io'

    def test_missing_tag_means_latest(self):
        assert parse_image_reference('nginx').tag == 'latest'
        assert parse_image_reference('ghcr.io/esphome/esphome').tag == 'latest'


class TestRegistryHost:

    def test_ghcr_reference(self):
        ref = parse_image_reference('ghcr.io/esphome/esphome:2024.6')
        assert ref.registry == 'ghcr.io'
        assert ref.namespace == 'esphome'
        assert ref.name == 'esphome'
        assert ref.tag == '2024.6'
        assert ref.repository == 'esphome/esphome'

    def test_mirror_prefix_resolves_upstream_host(self):
        ref = parse_image_reference('m.daocloud.io/ghcr.io/esphome/esphome:2024.7.3')
        assert ref.registry == 'ghcr.io'
        assert ref.path == 'm.daocloud.io/ghcr.io/esphome/esphome'
        assert ref.image == 'm.daocloud.io/ghcr.io/esphome/esphome:2024.7.3'

    @pytest.mark.parametrize('image,host', [
        ('a/b/c', 'a'),
        ('gcr.io/project/app:v1', 'gcr.io'),
        ('x/y/quay.io/org/repo:1', 'quay.io'),
    ])
    def test_host_is_third_from_last_segment(self, image, host):
        assert parse_image_reference(image).registry == host

    def test_registry_port_is_not_a_tag(self):
        ref = parse_image_reference('localhost:5000/team/app')
        assert ref.registry == 'localhost:5000'
        assert ref.tag == 'latest'

    def test_digest_qualifier_is_stripped(self):
        ref = parse_image_reference('postgres:16.2@sha256:abc')
        assert ref.tag == '16.2'
        assert ref.image == 'postgres:16.2'
