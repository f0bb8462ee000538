"""Network namespace provisioning through CNI."""
