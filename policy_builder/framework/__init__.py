"""Build pipeline stages.

Stages run strictly in order, each in its own module:

- `policy_builder.framework.discovery`: find policy modules under a root directory
- `policy_builder.framework.codegen`: generate the registrations module
- `policy_builder.framework.manifest`: rewrite `engine.yaml` and resolve dependencies
- `policy_builder.framework.compiler`: stage, check and archive the `.pyz` artifact
- `policy_builder.framework.packaging`: optional container image
- `policy_builder.framework.orchestrator`: sequencing and failure handling

The embedded runtime lives in `policykit` and must not import from here.
"""
