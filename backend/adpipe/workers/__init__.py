"""Generation worker hand-off and callback runner."""
