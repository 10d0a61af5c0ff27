from django.db import models


class Segment(models.Model):
    tenant_id = models.CharField(max_length=64, db_index=True)
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True, default='')
    rules = models.JSONField(default=list)  # targeting rules, see apps.segments.rules
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.name
