"""
Cloud-config templates for the director, one per backend.
"""
from jinja2 import Environment, StrictUndefined

_env = Environment(undefined=StrictUndefined, keep_trailing_newline=True)

DOCKER_CLOUD_CONFIG = _env.from_string("""\
azs:
- name: z1
- name: z2
- name: z3

vm_types:
- name: default

disk_types:
- name: default
  disk_size: 1024

networks:
- name: default
  type: manual
  subnets:
  - azs: [z1, z2, z3]
    range: {{ subnet }}
    dns: [8.8.8.8]
    reserved: [{{ reserved }}]
    gateway: {{ gateway }}
    static: [{{ static }}]
    cloud_properties:
      name: {{ network_name }}

vm_extensions:
- name: all_ports
  cloud_properties:
    ports:
    - 22/tcp

compilation:
  workers: {{ workers }}
  az: z1
  reuse_compilation_vms: true
  vm_type: default
  network: default
""")

INCUS_CLOUD_CONFIG = _env.from_string("""\
azs:
- name: z1
- name: z2
- name: z3

vm_types:
- name: default
  cloud_properties:
    instance_type: {{ instance_type }}
    ephemeral_disk: {{ disk_size }}

disk_types:
- name: default
  disk_size: {{ disk_size }}

networks:
- name: default
  type: manual
  subnets:
  - azs: [z1, z2, z3]
    range: {{ subnet }}
    dns: [8.8.8.8]
    gateway: {{ gateway }}
    reserved: [{{ reserved }}]
    static: [{{ static }}]
    cloud_properties:
      name: {{ network_name }}

compilation:
  workers: {{ workers }}
  az: z1
  reuse_compilation_vms: true
  vm_type: default
  network: default
""")


def render_cloud_config(template, **values) -> bytes:
    return template.render(**values).encode()
