LOGO = r"""
   _             _          _
  /_\  _ _ __| |_  _ __(_)_ __  ___
 / _ \| '_/ _| ' \| '_ \ | '_ \/ -_)
/_/ \_\_| \__|_||_| .__/_| .__/\___|
                  |_|    |_|
  amd64 + arm64 -> manifest list -> rollout
"""
