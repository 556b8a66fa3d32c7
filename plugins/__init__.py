"""Host-side pieces shared by the desktop tool panels."""
