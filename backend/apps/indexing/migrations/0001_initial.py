# Generated migration for IndexedChunk

from django.db import migrations, models
import pgvector.django


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        pgvector.django.VectorExtension(),
        migrations.CreateModel(
            name='IndexedChunk',
            fields=[
                ('id', models.CharField(editable=False, max_length=300, primary_key=True, serialize=False)),
                ('document_id', models.CharField(db_index=True, help_text='ID of the parent document', max_length=255)),
                ('chunk_index', models.PositiveIntegerField(help_text='Index of this chunk within the document (0-based)')),
                ('text', models.TextField(help_text='The text content of this chunk')),
                ('start_offset', models.PositiveIntegerField()),
                ('end_offset', models.PositiveIntegerField()),
                ('heading', models.CharField(blank=True, max_length=500, null=True)),
                ('url', models.URLField(blank=True, max_length=1000, null=True)),
                ('category', models.CharField(blank=True, max_length=100, null=True)),
                ('org_scope', models.CharField(blank=True, db_index=True, help_text='Tenant partition; NULL for globally visible chunks', max_length=255, null=True)),
                ('embedding', pgvector.django.VectorField(blank=True, dimensions=384, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'db_table': 'rag_chunks',
                'ordering': ['document_id', 'chunk_index'],
            },
        ),
        migrations.AddIndex(
            model_name='indexedchunk',
            index=models.Index(fields=['document_id', 'chunk_index'], name='rag_chunks_documen_4c1a2e_idx'),
        ),
        migrations.AddConstraint(
            model_name='indexedchunk',
            constraint=models.UniqueConstraint(fields=('document_id', 'chunk_index'), name='unique_document_chunk'),
        ),
    ]
