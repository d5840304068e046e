# utils/masking.py


def mask_identity(identity: str) -> str:
     """
     Mask a recipient identity for log output.
     Example: jane.doe@example.com -> ja***@example.com
     """
     if not identity:
          return "<empty>"
     local, sep, domain = identity.partition("@")
     visible = local[:2] if len(local) > 2 else local[:1]
     return f"{visible}***{sep}{domain}"
