"""Build-time tooling that turns a directory of policy modules into one engine artifact."""
